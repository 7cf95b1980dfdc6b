"""Shared utility functions.

get_or_404:       model lookup raising NotFoundError
parse_date:       lenient date parsing (returns None on bad input)
parse_datetime:   strict ISO datetime parsing (raises ValidationError)
utcnow / as_utc:  timezone normalisation for values read back from SQLite
"""
import logging
from datetime import date, datetime, timezone

from radiopharm.core.exceptions import NotFoundError, ValidationError
from radiopharm.models import db

logger = logging.getLogger(__name__)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime | None) -> datetime | None:
    """Return *value* as an aware UTC datetime.

    SQLite drops tzinfo on DateTime(timezone=True) columns, so naive values
    read back from the store are taken to be UTC already.
    """
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def get_or_404(model, pk, label=None):
    """Fetch a model instance by primary key or raise NotFoundError."""
    label = label or model.__name__
    obj = db.session.get(model, pk)
    if obj is None:
        raise NotFoundError(resource=label, resource_id=pk)
    return obj


def parse_date(value):
    """Parse a date string (ISO or DD.MM.YYYY) to a date object.

    Returns None for empty/invalid input. Supports:
    - YYYY-MM-DD (ISO format)
    - YYYY-MM-DDTHH:MM:SS (datetime ISO → .date())
    - DD.MM.YYYY (European format)
    """
    if not value:
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    try:
        return date.fromisoformat(str(value))
    except (ValueError, TypeError):
        pass
    try:
        return datetime.fromisoformat(str(value)).date()
    except (ValueError, TypeError):
        pass
    try:
        return datetime.strptime(str(value), "%d.%m.%Y").date()
    except (ValueError, TypeError):
        return None


def parse_datetime(value, field: str = "datetime", *, required: bool = True):
    """Parse an ISO-8601 datetime into an aware UTC datetime.

    A trailing ``Z`` is accepted. Naive input is taken to be UTC.

    Raises:
        ValidationError: when the value is missing (and required) or malformed.
    """
    if value in (None, ""):
        if required:
            raise ValidationError(f"{field} is required", details={field: "required"})
        return None
    if isinstance(value, datetime):
        return as_utc(value)
    text = str(value).strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        return as_utc(datetime.fromisoformat(text))
    except ValueError as exc:
        raise ValidationError(
            f"{field} must be an ISO-8601 datetime", details={field: str(value)}
        ) from exc
