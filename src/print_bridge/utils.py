import base64
import time
from datetime import datetime, timezone


def to_base64(data: bytes) -> str:
    return base64.b64encode(data).decode('ascii')


def from_base64(value: str) -> bytes:
    """Decode base64, tolerating a data-URI prefix and stripped padding."""
    raw = (value or '').strip()
    if ',' in raw and raw.startswith('data:'):
        raw = raw.split(',', 1)[1]
    raw += '=' * (-len(raw) % 4)
    return base64.b64decode(raw)


def now_ms() -> int:
    return int(time.time() * 1000)


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def parse_int(val, default=0) -> int:
    try:
        return int(val) if val not in (None, '') else default
    except (TypeError, ValueError):
        return default
