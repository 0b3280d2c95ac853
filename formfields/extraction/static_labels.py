"""
STATIC_LABEL fields: pre-printed text kept for translation and display.
"""

import logging
from typing import List, Sequence

from formfields.config import CONFIG, PipelineConfig
from formfields.fields import FieldType, FormField, StaticTextBlock, new_field_id
from formfields.utils.bbox import same_page_iou

logger = logging.getLogger(__name__)


def create_static_label_fields(static_text: Sequence[StaticTextBlock], fields: Sequence[FormField],
                               form_id: str, config: PipelineConfig = CONFIG) -> List[FormField]:
    """
    Turn static text blocks into STATIC_LABEL fields.

    A block overlapping any field's label or input box (same page, IoU above
    ``static_label_overlap_iou``) is already represented and is skipped.
    """
    occupied = []
    for f in fields:
        if f.label_bounding_box is not None:
            occupied.append(f.label_bounding_box)
        if f.bounding_box is not None:
            occupied.append(f.bounding_box)

    labels = []
    for block in static_text:
        bbox = block.bounding_box.with_page(block.page)
        if any(same_page_iou(bbox, box) > config.static_label_overlap_iou for box in occupied):
            continue
        labels.append(FormField(
            id=new_field_id(),
            form_id=form_id,
            field_name=block.text,
            field_type=FieldType.STATIC_LABEL,
            original_text=block.text,
            label_bounding_box=bbox,
            confidence=1.0,
            page=block.page,
        ))

    logger.debug("Static labels: %d of %d text blocks kept", len(labels), len(static_text))
    return labels
