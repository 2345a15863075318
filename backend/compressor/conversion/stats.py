"""Size formatting and before/after reduction accounting."""
import math
from typing import Optional

from compressor.conversion.models import Stats

SIZE_UNITS = ("B", "KB", "MB", "GB")
NO_VALUE = "–"


def format_size(num_bytes: Optional[float]) -> str:
    """Human-readable size, e.g. 2048 -> '2.00 KB'. Stops at GB."""
    if num_bytes is None or not math.isfinite(num_bytes) or num_bytes <= 0:
        return "0 KB"
    value = float(num_bytes)
    unit = 0
    while value >= 1024 and unit < len(SIZE_UNITS) - 1:
        value /= 1024
        unit += 1
    return f"{value:.2f} {SIZE_UNITS[unit]}"


def compute_stats(original_size: Optional[int], compressed_size: Optional[int]) -> Stats:
    """
    Compare original and compressed sizes.
    Reduction is shown as a negative delta ("-60.0%"); growth is reported as "0%".
    """
    reduction = "0%"
    if original_size and compressed_size and compressed_size < original_size:
        percent = (original_size - compressed_size) / original_size * 100
        reduction = f"-{percent:.1f}%"
    return Stats(
        original_size=original_size or None,
        compressed_size=compressed_size or None,
        reduction_percent=reduction,
    )


def stats_display(stats: Stats) -> dict[str, str]:
    return {
        "original_size": format_size(stats.original_size) if stats.original_size else NO_VALUE,
        "compressed_size": format_size(stats.compressed_size) if stats.compressed_size else NO_VALUE,
        "size_reduction": stats.reduction_percent,
    }
