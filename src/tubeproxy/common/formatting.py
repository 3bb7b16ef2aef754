"""Human readable rendering helpers for log records."""

from __future__ import annotations

_UNITS = ("B", "kB", "MB", "GB", "TB", "PB", "EB", "ZB", "YB")


def human_size(num_bytes: int) -> str:
    """Render a byte count using base-1024 units, e.g. ``human_size(2048) == "2.00 kB"``."""

    size = float(max(0, num_bytes))
    factor = 0
    while size >= 1024 and factor < len(_UNITS) - 1:
        size /= 1024
        factor += 1
    return f"{size:.2f} {_UNITS[factor]}"
