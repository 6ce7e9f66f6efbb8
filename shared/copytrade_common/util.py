"""Utility functions for the copy trading engine."""

import logging
from decimal import Decimal, InvalidOperation
from typing import Any, Optional

from .errors import InvalidInput


def setup_logging(
    name: str,
    level: str = "INFO",
    format_str: Optional[str] = None,
) -> logging.Logger:
    """
    Set up structured logging for a component.
    
    Args:
        name: Logger name
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        format_str: Optional custom format string
    
    Returns:
        Configured logger
    """
    if format_str is None:
        format_str = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"
    
    logging.basicConfig(
        level=getattr(logging, level.upper()),
        format=format_str,
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    
    return logging.getLogger(name)


def to_decimal(value: Any, field_name: str = "value") -> Decimal:
    """
    Convert a JSON/CLI value to Decimal.

    Floats go through str() so 0.1 stays 0.1.

    Raises:
        InvalidInput: If the value is not a finite number
    """
    if isinstance(value, Decimal):
        result = value
    elif isinstance(value, bool) or value is None:
        raise InvalidInput(f"{field_name} must be a number")
    else:
        try:
            result = Decimal(str(value))
        except (InvalidOperation, ValueError):
            raise InvalidInput(f"{field_name} must be a number, got {value!r}")
    if not result.is_finite():
        raise InvalidInput(f"{field_name} must be finite")
    return result


def to_int(value: Any, field_name: str = "value") -> int:
    """
    Convert a JSON/CLI value to int. Integral floats and strings are accepted.

    Raises:
        InvalidInput: If the value is not a whole number
    """
    if isinstance(value, int) and not isinstance(value, bool):
        return value
    number = to_decimal(value, field_name)
    if number != number.to_integral_value():
        raise InvalidInput(f"{field_name} must be a whole number, got {value!r}")
    return int(number)


def decimal_default(obj: Any) -> Any:
    """orjson default hook: Decimals serialize as strings."""
    if isinstance(obj, Decimal):
        return str(obj)
    raise TypeError(f"Type is not JSON serializable: {type(obj).__name__}")


def clamp(value, min_val, max_val):
    """Clamp a value between min and max."""
    return max(min_val, min(max_val, value))
