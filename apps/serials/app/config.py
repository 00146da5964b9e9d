from __future__ import annotations

import os


def _env_or(key: str, default: str) -> str:
    v = os.getenv(key)
    return v if v is not None else default


def _env_bool(key: str, default: bool = False) -> bool:
    v = os.getenv(key)
    if v is None:
        return default
    return v.strip().lower() in ("1", "true", "yes", "y", "on", "t")


def _env_int(key: str, default: int) -> int:
    try:
        return int(_env_or(key, str(default)))
    except ValueError:
        return default


def _env_float(key: str, default: float) -> float:
    try:
        return float(_env_or(key, str(default)))
    except ValueError:
        return default


ENV_LOWER = _env_or("ENV", "dev").lower()

DB_URL = _env_or("SERIALS_DB_URL", _env_or("DB_URL", "sqlite+pysqlite:////tmp/serials.db"))
DB_SCHEMA = os.getenv("DB_SCHEMA") if not DB_URL.startswith("sqlite") else None

# Every store call is bounded; a timeout surfaces as a retryable error.
STORE_TIMEOUT_SECONDS = max(1, _env_int("SERIALS_STORE_TIMEOUT_SECONDS", 5))
BOOKING_MAX_ATTEMPTS = max(1, _env_int("SERIALS_BOOKING_MAX_ATTEMPTS", 3))
BOOKING_BACKOFF_MS = max(0, _env_int("SERIALS_BOOKING_BACKOFF_MS", 50))

# When on, a date is bookable only if an admin enabled it with an override.
REQUIRE_DATE_OVERRIDE = _env_bool("SERIALS_REQUIRE_DATE_OVERRIDE", False)

PLATFORM_FEE_PCT = min(max(_env_float("SERIALS_PLATFORM_FEE_PCT", 0.0), 0.0), 1.0)

EVENTS_ENABLED = _env_bool("EVENTS_ENABLED", False)
EVENTS_REDIS_URL = _env_or("EVENTS_REDIS_URL", "redis://localhost:6379/0")
EVENTS_CHANNEL = _env_or("SERIALS_EVENTS_CHANNEL", "events:serials")

INTERNAL_SECRET = os.getenv("SERIALS_INTERNAL_SECRET") or ""
_require_internal_raw = _env_or("SERIALS_REQUIRE_INTERNAL_SECRET", "").strip().lower()
if _require_internal_raw in ("0", "false", "no", "off"):
    REQUIRE_INTERNAL_SECRET = False
elif _require_internal_raw:
    REQUIRE_INTERNAL_SECRET = True
else:
    REQUIRE_INTERNAL_SECRET = ENV_LOWER in ("prod", "production", "staging")

# Never expose interactive API docs by default in prod.
ENABLE_DOCS = ENV_LOWER in ("dev", "test") or _env_bool("ENABLE_API_DOCS_IN_PROD", False)
