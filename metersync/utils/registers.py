"""Element-specific register number calculation.

A meter exposes up to 26 lettered elements (A-Z) that share one device
connection. Element A reads the base register; every following letter is
shifted by a fixed block of 10000 register numbers.
"""

import string

ELEMENT_OFFSET = 10000


def is_valid_element(element) -> bool:
    """True for a single letter A-Z (either case)."""
    return (
        isinstance(element, str)
        and len(element) == 1
        and element.upper() in string.ascii_uppercase
    )


def element_position(element: str) -> int:
    """Zero-based position of an element letter (A=0 ... Z=25)."""
    if not is_valid_element(element):
        raise ValueError(f"Invalid meter element: {element!r}")
    return ord(element.upper()) - ord("A")


def element_register_number(base_register: int, element: str) -> int:
    """Register number to read for ``element`` given the base register."""
    if base_register < 0:
        raise ValueError(f"Register number must be non-negative: {base_register}")
    return base_register + element_position(element) * ELEMENT_OFFSET


def base_register_number(register_number: int, element: str) -> int:
    """Inverse of :func:`element_register_number`."""
    return register_number - element_position(element) * ELEMENT_OFFSET
