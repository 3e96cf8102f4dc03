import os
from datetime import datetime, tzinfo
from typing import Optional

from dateutil import tz


def _env_float(name: str, default: float, low: float, high: float) -> float:
    raw = os.environ.get(name, "").strip()
    if not raw:
        return default
    try:
        value = float(raw)
    except ValueError:
        return default
    return max(low, min(high, value))


def _env_int(name: str, default: int, low: int, high: int) -> int:
    raw = os.environ.get(name, "").strip()
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError:
        return default
    return max(low, min(high, value))


def fetch_timeout() -> float:
    return _env_float("READER_FETCH_TIMEOUT", 15.0, 1.0, 120.0)


def image_timeout() -> float:
    return _env_float("READER_IMAGE_TIMEOUT", 5.0, 0.5, 60.0)


def image_max_bytes() -> int:
    return _env_int("READER_IMAGE_MAX_BYTES", 5 * 1024 * 1024, 1024, 50 * 1024 * 1024)


def min_content_length() -> int:
    return _env_int("READER_MIN_CONTENT_LENGTH", 200, 0, 10000)


def db_path() -> str:
    return os.environ.get("READER_DB", "/data/reader.db").strip() or "/data/reader.db"


def log_level() -> str:
    return os.environ.get("LOG_LEVEL", "INFO").strip().upper() or "INFO"


def local_tz() -> Optional[tzinfo]:
    return tz.gettz(os.environ.get("TZ", "UTC"))


def now_local() -> datetime:
    return datetime.now(local_tz())
