"""
Enum Utilities for VARCHAR-based Status Fields

Statuses and movement types are stored as VARCHAR, not database ENUMs, and
compared against Python ``str`` enums in code:

INPUT (API Request):
    Pydantic Enum → .value → String → Database
    Example: TransferStatus.PENDING → "PENDING" → VARCHAR

OUTPUT (API Response):
    Database → String → Return directly
"""

from enum import Enum
from typing import Any, Optional, TypeVar, Type


T = TypeVar('T', bound=Enum)


def get_enum_value(value: Any) -> Optional[str]:
    """
    Safely get string value from an enum or string.

    Examples:
        >>> get_enum_value(TransferStatus.PENDING)
        'PENDING'
        >>> get_enum_value("PENDING")
        'PENDING'
    """
    if value is None:
        return None
    if isinstance(value, Enum):
        return value.value
    return str(value)


def to_enum(value: Any, enum_class: Type[T]) -> Optional[T]:
    """Convert a database string to an enum instance, or None if unknown."""
    if value is None:
        return None
    if isinstance(value, enum_class):
        return value
    try:
        return enum_class(value)
    except (ValueError, KeyError):
        return None


def is_status(db_value: Optional[str], enum_value: Enum) -> bool:
    """Compare a database string with an enum value."""
    if db_value is None:
        return False
    return db_value == enum_value.value

