"""Late-bound dependencies shared between ``main`` and the modular routers."""
from __future__ import annotations

from typing import Any, Callable, Dict

_REQUIRED = ("get_conn", "get_current_user")
_registry: Dict[str, Callable[..., Any]] = {}


def configure(
    *,
    get_conn: Callable[[], Any],
    get_current_user: Callable[..., Any],
) -> None:
    """Register the connection factory and session resolver used by the billing routers."""

    _registry["get_conn"] = get_conn
    _registry["get_current_user"] = get_current_user


def reset() -> None:
    _registry.clear()


def is_configured() -> bool:
    return all(name in _registry for name in _REQUIRED)


def _require(name: str) -> Callable[..., Any]:
    try:
        return _registry[name]
    except KeyError:
        raise RuntimeError(f"Application context has not been configured yet: {name}") from None


def get_conn() -> Any:
    return _require("get_conn")()


def get_current_user(*args: Any, **kwargs: Any) -> Any:
    return _require("get_current_user")(*args, **kwargs)
