from datetime import datetime, timezone
from typing import Optional


def utcnow() -> datetime:
    """UTC naive: el record store guarda timestamps sin zona."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Lleva un datetime con offset a UTC naive; los naive se asumen ya en UTC."""
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)
