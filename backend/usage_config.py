"""Shared configuration for feature-usage telemetry."""

from __future__ import annotations

import os
from typing import Any, Dict


def _env_bool(value: str) -> bool:
    return value.strip().lower() in {"1", "true", "yes", "on"}


USAGE_TRACKING_ENABLED = _env_bool(os.getenv("USAGE_TRACKING_ENABLED", "false"))
USAGE_QUEUE_MAXSIZE = int(os.getenv("USAGE_QUEUE_MAXSIZE", "10000"))
USAGE_BATCH_SIZE = int(os.getenv("USAGE_BATCH_SIZE", "200"))
APP_VERSION = os.getenv("APP_VERSION")
DB_CONNECT_TIMEOUT = float(os.getenv("DB_CONNECT_TIMEOUT", "5"))

DB_CONFIG: Dict[str, Any] = {
    "host": os.getenv("DB_HOST", "127.0.0.1"),
    "port": int(os.getenv("DB_PORT", "5432")),
    "database": os.getenv("DB_NAME", "humidor_db"),
    "user": os.getenv("DB_USER", "humidor_user"),
    "password": os.getenv("DB_PASSWORD", "humidor_pass"),
}
