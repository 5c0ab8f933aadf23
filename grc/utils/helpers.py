"""Shared parsing helpers for services and blueprints.

parse_date:        returns None on bad input
parse_date_input:  raises ValidationError on bad input
parse_bool:        tolerant truthiness for query strings and JSON
parse_score:       1..5 rating fields (likelihood, impact, residual scores)
parse_text:        stripped free text; ValidationError on non-string input
next_sequential_code: RISK-001 / EX-001 style per-organization codes
get_or_raise:      primary-key lookup raising NotFoundError
"""
from datetime import date, datetime

from sqlalchemy import func

from grc.core.exceptions import NotFoundError, ValidationError
from grc.models import db


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


def parse_date_input(value, field_name="date"):
    """Parse a date, raising ValidationError on unparseable input.

    Empty input returns None; callers decide whether the field is required.
    """
    if value in (None, ""):
        return None
    parsed = parse_date(value)
    if parsed is None:
        raise ValidationError(
            f"Invalid {field_name}. Use YYYY-MM-DD or DD.MM.YYYY.",
            details={field_name: "invalid date"},
        )
    return parsed


def parse_bool(value, default=False):
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in ("1", "true", "yes", "on")


def parse_score(value, field_name, *, low=1, high=5):
    """Coerce a 1..5 rating; ValidationError when out of range or not an integer."""
    try:
        score = int(value)
    except (TypeError, ValueError) as exc:
        raise ValidationError(
            f"{field_name} must be an integer between {low} and {high}",
            details={field_name: "invalid"},
        ) from exc
    if isinstance(value, float) and not value.is_integer():
        raise ValidationError(
            f"{field_name} must be an integer between {low} and {high}",
            details={field_name: "invalid"},
        )
    if not low <= score <= high:
        raise ValidationError(
            f"{field_name} must be between {low} and {high}",
            details={field_name: "out of range"},
        )
    return score


def parse_text(value, field_name, *, required=True):
    """Strip a free-text field.

    Non-string input raises ValidationError.  Optional fields pass ``None``
    through; required fields reject ``None`` and blank text.
    """
    if value is None and not required:
        return None
    if value is not None and not isinstance(value, str):
        raise ValidationError(f"{field_name} must be text", details={field_name: "invalid"})
    text = (value or "").strip()
    if required and not text:
        label = field_name.replace("_", " ").capitalize()
        raise ValidationError(f"{label} is required", details={field_name: "required"})
    return text


def next_sequential_code(model_class, code_column, prefix: str, organization_id: int) -> str:
    """Generate next per-organization code: {PREFIX}-{SEQ:03d}.

    Uses the highest existing numeric suffix rather than a row count, so
    deleting a record never causes a code to be reissued.
    """
    codes = (
        db.session.query(code_column)
        .filter(model_class.organization_id == organization_id)
        .all()
    )
    highest = 0
    for (code,) in codes:
        try:
            highest = max(highest, int(str(code).rsplit("-", 1)[-1]))
        except ValueError:
            continue
    return f"{prefix}-{highest + 1:03d}"


def count_by(model_class, column, **filters) -> dict:
    """{value: count} for ``column`` over rows matching ``filters``."""
    rows = (
        db.session.query(column, func.count(model_class.id))
        .filter(*[getattr(model_class, k) == v for k, v in filters.items()])
        .group_by(column)
        .all()
    )
    return {value: count for value, count in rows}


def get_or_raise(model, pk, label=None):
    """Fetch a model instance by primary key or raise NotFoundError."""
    obj = db.session.get(model, pk) if pk is not None else None
    if not obj:
        raise NotFoundError(resource=label or model.__name__, resource_id=pk)
    return obj
