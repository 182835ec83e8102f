from __future__ import annotations

from typing import Any, Iterable


class ValidationError(Exception):
    """Raised when request data fails domain validation."""


class NotFoundError(LookupError):
    """Raised when a referenced plan, worker or result does not exist."""


class ConflictError(Exception):
    """Raised when a write would break a uniqueness or state precondition."""


def parse_id(value: Any, *, label: str = "id") -> int:
    """Coerce ``value`` to a positive integer id or raise ``ValidationError``."""

    if isinstance(value, bool):
        raise ValidationError(f"invalid {label}")
    try:
        result = int(str(value).strip())
    except (TypeError, ValueError):
        raise ValidationError(f"invalid {label}") from None
    if result <= 0:
        raise ValidationError(f"invalid {label}")
    return result


def parse_ids(values: Iterable[Any], *, limit: int) -> list[int]:
    """Parse a list of at most ``limit`` ids; any malformed entry rejects the list."""

    items = list(values)
    if not items:
        raise ValidationError("no ids provided")
    if len(items) > limit:
        raise ValidationError(f"at most {limit} ids are allowed per request")
    ids: list[int] = []
    seen: set[int] = set()
    for value in items:
        parsed = parse_id(value)
        if parsed not in seen:
            seen.add(parsed)
            ids.append(parsed)
    return ids
