import re
from datetime import datetime, timezone
from typing import Optional
import bleach


def sanitize_input(value: Optional[str]) -> str:
    """Sanitize a user-supplied string before it is stored or sent upstream.

    - Strips HTML tags using bleach.clean(..., tags=set(), strip=True)
    - Removes obvious SQL metacharacters like '--' and ';'
    - Trims whitespace
    """
    if value is None:
        return ""
    # remove NULL bytes
    val = value.replace("\x00", "")
    # strip tags
    val = bleach.clean(val, tags=set(), strip=True)
    # remove common SQL comment and statement separators
    val = re.sub(r"(--|;)", "", val)
    return val.strip()


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    # SQLite hands back naive datetimes; everything we store is UTC.
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)
