"""
Utilities package for the form field extraction pipeline.

Re-exports the public helpers.
"""

from .bbox import (
    compute_iou,
    same_page_iou,
    intersection_area,
    horizontal_overlap,
    is_speckle,
    union_box,
)
from .text import (
    name_similarity,
    fuzzy_name_match,
    normalize_name,
    is_placeholder,
    looks_like_prose,
)
from .image import (
    PageRenderer,
    load_image,
    get_page_count,
    render_page,
    encode_jpeg_base64,
)

__all__ = [
    # Bbox
    'compute_iou',
    'same_page_iou',
    'intersection_area',
    'horizontal_overlap',
    'is_speckle',
    'union_box',
    # Text
    'name_similarity',
    'fuzzy_name_match',
    'normalize_name',
    'is_placeholder',
    'looks_like_prose',
    # Image
    'PageRenderer',
    'load_image',
    'get_page_count',
    'render_page',
    'encode_jpeg_base64',
]
