"""Parse Kubernetes resource quantities (``"3800m"``, ``"16Gi"``, ``"1e3"``)."""

from __future__ import annotations

import math
from decimal import Decimal, InvalidOperation

_BINARY_SUFFIXES = {
    "Ki": Decimal(1024),
    "Mi": Decimal(1024) ** 2,
    "Gi": Decimal(1024) ** 3,
    "Ti": Decimal(1024) ** 4,
    "Pi": Decimal(1024) ** 5,
    "Ei": Decimal(1024) ** 6,
}

_DECIMAL_SUFFIXES = {
    "n": Decimal("1e-9"),
    "u": Decimal("1e-6"),
    "m": Decimal("1e-3"),
    "k": Decimal("1e3"),
    "M": Decimal("1e6"),
    "G": Decimal("1e9"),
    "T": Decimal("1e12"),
    "P": Decimal("1e15"),
    "E": Decimal("1e18"),
}


def parse_quantity(value: str | int | float) -> Decimal:
    """Return the numeric value of a quantity string.

    Raises ``ValueError`` for anything that is not a valid quantity.
    """
    s = str(value).strip()
    if not s:
        raise ValueError("empty quantity")

    multiplier = Decimal(1)
    if s[-2:] in _BINARY_SUFFIXES:
        multiplier = _BINARY_SUFFIXES[s[-2:]]
        s = s[:-2]
    elif s[-1] in _DECIMAL_SUFFIXES:
        multiplier = _DECIMAL_SUFFIXES[s[-1]]
        s = s[:-1]

    try:
        number = Decimal(s)
    except InvalidOperation as exc:
        raise ValueError(f"invalid quantity {value!r}") from exc
    if not number.is_finite():
        raise ValueError(f"invalid quantity {value!r}")
    return number * multiplier


def quantity_to_int(value: str | int | float) -> int:
    """Integer value of a quantity, rounded up (``"500m"`` → 1)."""
    return math.ceil(parse_quantity(value))
