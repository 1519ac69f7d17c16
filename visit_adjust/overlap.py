"""Overlap detection between two visit windows."""

from datetime import datetime, timedelta
from typing import Optional

from pydantic import BaseModel

from .domain import OverlapType, TimeWindow


class OverlapResult(BaseModel):
    """Outcome of comparing two windows."""

    has_conflict: bool
    overlap_minutes: float = 0.0
    overlap_type: OverlapType = OverlapType.NONE
    overlap_start: Optional[datetime] = None
    overlap_end: Optional[datetime] = None


NO_OVERLAP = OverlapResult(has_conflict=False)


def classify_overlap(a: TimeWindow, b: TimeWindow) -> OverlapType:
    """Describe how window ``a`` sits relative to window ``b``."""
    if a.start == b.start and a.end == b.end:
        return OverlapType.IDENTICAL
    if a.start <= b.start and a.end >= b.end:
        return OverlapType.CONTAINS
    if b.start <= a.start and b.end >= a.end:
        return OverlapType.CONTAINED
    if a.start < b.start:
        return OverlapType.PARTIAL_END
    return OverlapType.PARTIAL_START


def detect_overlap(
    a: TimeWindow, b: TimeWindow, buffer_minutes: int = 0
) -> OverlapResult:
    """Check whether two windows overlap once ``a`` is padded by the buffer.

    Args:
        a: Window expanded by ``buffer_minutes`` on both ends
        b: Window compared as-is
        buffer_minutes: Travel/turnaround buffer between visits

    Returns:
        OverlapResult with the overlap length in minutes. A result with
        ``has_conflict`` set always carries a positive ``overlap_minutes``.
    """
    buffer = timedelta(minutes=buffer_minutes)
    expanded_start = a.start - buffer
    expanded_end = a.end + buffer

    if not (expanded_start < b.end and expanded_end > b.start):
        return NO_OVERLAP

    overlap_start = max(expanded_start, b.start)
    overlap_end = min(expanded_end, b.end)
    minutes = max(0.0, (overlap_end - overlap_start).total_seconds() / 60)
    if minutes <= 0:
        return NO_OVERLAP

    return OverlapResult(
        has_conflict=True,
        overlap_minutes=minutes,
        overlap_type=classify_overlap(a, b),
        overlap_start=overlap_start,
        overlap_end=overlap_end,
    )


def windows_overlap(a: TimeWindow, b: TimeWindow, buffer_minutes: int = 0) -> bool:
    """Shorthand for ``detect_overlap(...).has_conflict``."""
    return detect_overlap(a, b, buffer_minutes).has_conflict
