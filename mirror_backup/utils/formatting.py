"""Human readable sizes for summaries and messages."""

from typing import Union

_UNITS = ("Byte", "KiB", "MiB", "GiB", "TiB")


def format_size(size: Union[int, float]) -> str:
    """Format a byte count, e.g. ``format_size(1536) == "1.50 KiB"``."""
    value = float(size)
    unit = 0
    while abs(value) > 1024 and unit < len(_UNITS) - 1:
        value /= 1024
        unit += 1
    return f"{value:.2f} {_UNITS[unit]}"
