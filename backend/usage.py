from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, HTTPException, Request, status
from pydantic import BaseModel, ConfigDict, Field, model_validator

from .usage_config import USAGE_TRACKING_ENABLED
from .usage_queue import insert_events


router = APIRouter(prefix="/usage", tags=["usage"])


class UsageEvent(BaseModel):
    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    feature: str
    action: str = "used"
    ts: Optional[datetime] = None
    user_id: Optional[str] = Field(default=None, alias="userId")
    platform: Optional[str] = None
    had_access: Optional[bool] = Field(default=None, alias="hadAccess")
    props: Dict[str, Any] = Field(default_factory=dict)

    @model_validator(mode="after")
    def _ensure_feature_name(self) -> "UsageEvent":
        if not self.feature or not self.feature.strip():
            raise ValueError("feature must be a non-empty string")
        self.feature = self.feature.strip()
        return self


class UsageBatch(BaseModel):
    model_config = ConfigDict(extra="forbid")

    events: List[UsageEvent] = Field(max_length=500)


@router.post("/collect")
async def collect(batch: UsageBatch, request: Request) -> Dict[str, Any]:
    if not USAGE_TRACKING_ENABLED:
        return {"ok": True, "n": 0}

    pool = getattr(request.app.state, "usage_pool", None)
    if pool is None or not batch.events:
        return {"ok": True, "n": 0}

    now = datetime.now(timezone.utc)
    serialized = []
    for event in batch.events:
        payload = event.model_dump()
        payload["ts"] = event.ts or now
        serialized.append(payload)

    try:
        inserted = await insert_events(pool, serialized)
    except Exception as exc:
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR) from exc

    return {"ok": True, "n": inserted}
