"""Utility functions for MeterSync."""

from .registers import (
    ELEMENT_OFFSET,
    element_position,
    element_register_number,
    is_valid_element,
)
from .retry import RetryPolicy, retry_call
from .timeutil import utcnow

__all__ = [
    "ELEMENT_OFFSET",
    "element_position",
    "element_register_number",
    "is_valid_element",
    "RetryPolicy",
    "retry_call",
    "utcnow",
]
