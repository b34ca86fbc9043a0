import math
import re
from datetime import datetime, timedelta, timezone
from typing import Optional

from bson import ObjectId
from bson.errors import InvalidId

email_regex = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


def utcnow() -> datetime:
    # Naive UTC, matching what pymongo hands back for stored dates.
    return datetime.now(timezone.utc).replace(tzinfo=None)


def normalize_email(value: Optional[str]) -> str:
    return str(value or "").strip().lower()


def is_valid_email(value: Optional[str]) -> bool:
    normalized = normalize_email(value)
    return bool(normalized and email_regex.match(normalized))


def safe_float(value, default=0.0):
    if isinstance(value, bool):
        return default
    try:
        numeric = float(value)
    except (TypeError, ValueError):
        return default
    if math.isfinite(numeric):
        return numeric
    return default


def safe_positive_int(value, default=0):
    if isinstance(value, bool):
        return default
    try:
        numeric = int(float(value))
    except (TypeError, ValueError, OverflowError):
        return default
    return max(default, numeric)


def parse_bool(value, default=False) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in {"1", "true", "yes", "on"}


def clean_text(value) -> str:
    if value is None:
        return ""
    return str(value).strip()


def to_object_id(value) -> Optional[ObjectId]:
    if isinstance(value, ObjectId):
        return value
    try:
        return ObjectId(str(value))
    except (InvalidId, TypeError):
        return None


def isoformat(value) -> Optional[str]:
    if not isinstance(value, datetime):
        return None
    if value.tzinfo is not None:
        return value.isoformat()
    return f"{value.isoformat()}Z"


def page_count(total: int, page_size: int) -> int:
    if total <= 0 or page_size <= 0:
        return 0
    return math.ceil(total / page_size)


def parse_iso_date(value, *, end_of_day: bool = False) -> Optional[datetime]:
    if not value:
        return None
    candidate = str(value).strip()
    if not candidate:
        return None
    is_plain_date = bool(re.fullmatch(r"\d{4}-\d{2}-\d{2}", candidate))
    normalized = candidate.replace("Z", "+00:00")
    if is_plain_date:
        normalized = f"{candidate}T00:00:00"
    try:
        parsed = datetime.fromisoformat(normalized)
    except ValueError:
        return None
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    if end_of_day and is_plain_date:
        return parsed + timedelta(days=1)
    return parsed
