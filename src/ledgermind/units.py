"""Token amount conversion helpers.

On-chain amounts are uint256 base units. They are handled as Python ``int``
and persisted as decimal strings so SQLite never truncates them.
"""

from __future__ import annotations

from decimal import Decimal, ROUND_FLOOR, InvalidOperation


DEFAULT_DECIMALS = 6
UINT256_MAX = 2**256 - 1


def parse_units(value: Decimal | int | str, decimals: int = DEFAULT_DECIMALS) -> int:
    """Convert a human amount ("1.25") to base units, rounding down."""
    try:
        dec = Decimal(str(value))
    except InvalidOperation as e:
        raise ValueError(f"Invalid token amount: {value!r}") from e
    if not dec.is_finite():
        raise ValueError(f"Invalid token amount: {value!r}")
    if dec < 0:
        raise ValueError(f"Token amount must be non-negative: {value}")
    scaled = (dec * (Decimal(10) ** decimals)).to_integral_value(rounding=ROUND_FLOOR)
    return int(scaled)


def format_units(value: int, decimals: int = DEFAULT_DECIMALS) -> str:
    """Format base units as a fixed-point string ("1.250000")."""
    dec = Decimal(value) / (Decimal(10) ** decimals)
    return f"{dec:.{decimals}f}"


def to_db(value: int) -> str:
    if value < 0 or value > UINT256_MAX:
        raise ValueError(f"Amount out of uint256 range: {value}")
    return str(value)


def from_db(value: str | int | None) -> int:
    if value is None or value == "":
        return 0
    return int(value)
