"""
Bounding box utilities: overlap, size checks, and adjacency tests.

All boxes are normalized ``BoundingBox`` values (fractions of the page).
"""

from typing import Iterable, Optional

from formfields.fields import BoundingBox


# ============================================================================
# Overlap
# ============================================================================

def intersection_area(a: Optional[BoundingBox], b: Optional[BoundingBox]) -> float:
    """Area shared by two boxes (0.0 when either is missing or they don't overlap)."""
    if a is None or b is None:
        return 0.0

    x1 = max(a.left, b.left)
    y1 = max(a.top, b.top)
    x2 = min(a.right, b.right)
    y2 = min(a.bottom, b.bottom)

    if x2 <= x1 or y2 <= y1:
        return 0.0

    return (x2 - x1) * (y2 - y1)


def compute_iou(a: Optional[BoundingBox], b: Optional[BoundingBox]) -> float:
    """
    Intersection-over-union of two boxes.

    Symmetric, and 1.0 for any box against itself.  Page numbers are not
    compared; callers restrict to same-page pairs.

    Args:
        a: First box (may be None)
        b: Second box (may be None)

    Returns:
        IoU in [0.0, 1.0]
    """
    inter = intersection_area(a, b)
    if inter <= 0.0:
        return 0.0

    union = a.area + b.area - inter
    if union <= 0.0:
        return 0.0
    return inter / union


def same_page_iou(a: Optional[BoundingBox], b: Optional[BoundingBox]) -> float:
    """IoU, or 0.0 when the boxes sit on different pages."""
    if a is None or b is None or a.page != b.page:
        return 0.0
    return compute_iou(a, b)


def horizontal_overlap(a: BoundingBox, b: BoundingBox) -> float:
    """Width of the shared horizontal span (0.0 if disjoint)."""
    return max(0.0, min(a.right, b.right) - max(a.left, b.left))


# ============================================================================
# Size checks
# ============================================================================

def is_speckle(bbox: Optional[BoundingBox], min_width: float, min_height: float) -> bool:
    """True for missing boxes and boxes too thin to be a real field."""
    if bbox is None:
        return True
    return bbox.width < min_width or bbox.height < min_height


def union_box(boxes: Iterable[BoundingBox]) -> Optional[BoundingBox]:
    """Smallest box covering all given boxes (page taken from the first)."""
    boxes = list(boxes)
    if not boxes:
        return None
    left = min(b.left for b in boxes)
    top = min(b.top for b in boxes)
    right = max(b.right for b in boxes)
    bottom = max(b.bottom for b in boxes)
    if right <= left or bottom <= top:
        return None
    return BoundingBox(left, top, right - left, bottom - top, boxes[0].page)


# ============================================================================
# Adjacency (used to label orphan checkboxes)
# ============================================================================

def in_vertical_band(candidate: BoundingBox, target: BoundingBox, band_ratio: float) -> bool:
    """
    Check whether ``candidate``'s vertical centre lies within a band around
    ``target``'s centre.  The band half-height is ``band_ratio`` times the
    taller of the two boxes.
    """
    half_band = band_ratio * max(candidate.height, target.height)
    return abs(candidate.center_y - target.center_y) <= half_band


def left_gap(candidate: BoundingBox, target: BoundingBox) -> Optional[float]:
    """
    Horizontal gap when ``candidate`` ends at or before ``target`` starts.

    A small overlap (a label whose box bleeds into the checkbox) is
    accepted as zero gap.  Returns None if ``candidate`` is not to the left.
    """
    gap = target.left - candidate.right
    if gap < -target.width / 2:
        return None
    return max(0.0, gap)


def right_gap(candidate: BoundingBox, target: BoundingBox) -> Optional[float]:
    """Mirror of ``left_gap`` for a candidate starting after ``target``."""
    gap = candidate.left - target.right
    if gap < -target.width / 2:
        return None
    return max(0.0, gap)


def above_gap(candidate: BoundingBox, target: BoundingBox) -> Optional[float]:
    """
    Vertical gap when ``candidate`` sits above ``target`` and the two share
    some horizontal span.  Returns None otherwise.
    """
    if horizontal_overlap(candidate, target) <= 0.0:
        return None
    gap = target.top - candidate.bottom
    if gap < -target.height / 2:
        return None
    return max(0.0, gap)
