import asyncio
import contextlib
import logging
import math
import os
import sys
from pathlib import Path
from typing import Any, Dict, Optional

from fastapi import Cookie, Depends, FastAPI, HTTPException, status
from fastapi.middleware.cors import CORSMiddleware
import psycopg2
from pydantic import BaseModel
from dotenv import load_dotenv
from jose import JWTError, jwt

_project_root = Path(__file__).resolve().parents[1]
if str(_project_root) not in sys.path:
    sys.path.append(str(_project_root))

try:
    from backend import app_context
    from backend.app.billing import load_billing_config
    from backend.app.routes.billing import router as billing_router
    from backend.maintenance_scheduler import (
        get_maintenance_metrics,
        shutdown_maintenance_scheduler,
        start_maintenance_scheduler,
    )
    from backend.usage import router as usage_router
    from backend.usage_config import USAGE_TRACKING_ENABLED
    from backend.usage_queue import UsageQueue, create_usage_pool, set_usage_queue
except ModuleNotFoundError as exc:
    if exc.name != "backend":
        raise
    import app_context  # type: ignore[no-redef]
    from app.billing import load_billing_config  # type: ignore[no-redef]
    from app.routes.billing import router as billing_router  # type: ignore[no-redef]
    from maintenance_scheduler import (  # type: ignore[no-redef]
        get_maintenance_metrics,
        shutdown_maintenance_scheduler,
        start_maintenance_scheduler,
    )
    from usage import router as usage_router  # type: ignore[no-redef]
    from usage_config import USAGE_TRACKING_ENABLED  # type: ignore[no-redef]
    from usage_queue import UsageQueue, create_usage_pool, set_usage_queue  # type: ignore[no-redef]


load_dotenv()

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s %(message)s",
)
logger = logging.getLogger("humidor")


def _parse_connect_timeout(raw_value: str) -> int:
    try:
        timeout = float(raw_value)
    except ValueError as exc:
        raise ValueError("DB_CONNECT_TIMEOUT must be a number") from exc
    if timeout < 0:
        raise ValueError("DB_CONNECT_TIMEOUT must be non-negative")
    return int(math.ceil(timeout))


DB_CFG = dict(
    host=os.getenv("DB_HOST", "127.0.0.1"),
    port=int(os.getenv("DB_PORT", "5432")),
    dbname=os.getenv("DB_NAME", "humidor_db"),
    user=os.getenv("DB_USER", "humidor_user"),
    password=os.getenv("DB_PASSWORD", "humidor_pass"),
    connect_timeout=_parse_connect_timeout(os.getenv("DB_CONNECT_TIMEOUT", "5")),
)

JWT_SECRET_KEY = os.getenv("JWT_SECRET_KEY", "dev-secret-change-me")
JWT_ALGORITHM = os.getenv("JWT_ALGORITHM", "HS256")
JWT_AUDIENCE = os.getenv("JWT_AUDIENCE") or None
SESSION_COOKIE_NAME = os.getenv("SESSION_COOKIE_NAME", "session")
BILLING_SCHEDULER_ENABLED = os.getenv("BILLING_SCHEDULER_ENABLED", "1").lower() in {"1", "true", "yes"}


class SessionUser(BaseModel):
    id: str
    email: Optional[str] = None


def get_conn():
    return psycopg2.connect(**DB_CFG)


def resolve_user_from_session_token(session_token: str) -> Optional[SessionUser]:
    options = {"verify_aud": JWT_AUDIENCE is not None}
    try:
        payload = jwt.decode(
            session_token,
            JWT_SECRET_KEY,
            algorithms=[JWT_ALGORITHM],
            audience=JWT_AUDIENCE,
            options=options,
        )
    except JWTError:
        return None
    subject = payload.get("sub")
    if not subject:
        return None
    return SessionUser(id=str(subject), email=payload.get("email"))


def get_current_user(session_token: Optional[str] = Cookie(None, alias=SESSION_COOKIE_NAME)) -> SessionUser:
    if not session_token:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Not authenticated")

    user = resolve_user_from_session_token(session_token)
    if user is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Not authenticated")
    return user


app_context.configure(get_conn=get_conn, get_current_user=get_current_user)

app = FastAPI(title="Humidor Billing API")

app.add_middleware(
    CORSMiddleware,
    allow_origins=[origin for origin in os.getenv("CORS_ORIGINS", "http://localhost:8081").split(",") if origin],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(billing_router)
app.include_router(usage_router)


@app.on_event("startup")
async def setup_usage_tracking() -> None:
    loop = asyncio.get_running_loop()
    pool = await create_usage_pool()
    queue = UsageQueue(pool=pool, loop=loop, enabled=USAGE_TRACKING_ENABLED)
    app.state.usage_pool = pool
    app.state.usage_queue = queue
    app.state.usage_task = None
    set_usage_queue(queue)
    if queue.enabled:
        app.state.usage_task = asyncio.create_task(queue.run())


@app.on_event("shutdown")
async def teardown_usage_tracking() -> None:
    task = getattr(app.state, "usage_task", None)
    queue = getattr(app.state, "usage_queue", None)
    pool = getattr(app.state, "usage_pool", None)

    set_usage_queue(None)
    if queue:
        queue.close()

    if task:
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task

    if queue:
        await queue.flush()
    if pool:
        await pool.close()


@app.on_event("startup")
def _start_maintenance_scheduler() -> None:
    if not BILLING_SCHEDULER_ENABLED:
        logger.info("Billing maintenance scheduler disabled")
        return
    config = load_billing_config()
    start_maintenance_scheduler(interval=config.maintenance_interval_seconds)


@app.on_event("shutdown")
def _shutdown_maintenance_scheduler() -> None:
    shutdown_maintenance_scheduler()


@app.get("/api/auth/me", response_model=SessionUser)
def read_current_user(current_user: SessionUser = Depends(get_current_user)):
    return current_user


@app.get("/api/healthz")
def healthz():
    return {"ok": True, "contextConfigured": app_context.is_configured()}


@app.get("/api/metrics/billing-maintenance")
def read_billing_maintenance_metrics() -> Dict[str, Any]:
    return get_maintenance_metrics()
