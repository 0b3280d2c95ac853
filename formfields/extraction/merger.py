"""
Field reconciliation merger.

Per page, three phases:
1. Match & upgrade: pair each fillable vision field with its best unmatched
   OCR field (IoU or name similarity); keep the OCR box, take the vision type.
2. Add missing: unmatched fillable vision fields with geometry become new fields.
3. Remove false positives: unmatched OCR fields whose name fuzzy-matches a
   vision false-positive entry are dropped; everything else is kept.

A type sanity pass then runs over the page's output.  All functions here
are pure: same inputs, same field set (up to freshly generated ids).
"""

import logging
import re
from dataclasses import replace
from typing import AbstractSet, Dict, Iterable, List, Optional, Sequence, Set

from formfields.config import CONFIG, PipelineConfig
from formfields.fields import (
    FieldType, FormField, VisionField, VisionPageResult, new_field_id,
)
from formfields.utils.bbox import compute_iou
from formfields.utils.text import fuzzy_name_match, name_similarity

logger = logging.getLogger(__name__)

TABLE_FIELD_PATTERN = re.compile(r'\(Row \d+\)$')

# Name fragments that mark a reference-number line, not a selection mark.
REFERENCE_MARKERS = ("#", "no.", "id")

# OCR types that carry more information than a generic vision "TEXT".
_GENERIC_TYPES = (FieldType.TEXT, FieldType.UNKNOWN)


def is_table_field(name: str) -> bool:
    return bool(TABLE_FIELD_PATTERN.search(name or ""))


def map_vision_field_type(vision_type: str, existing: Optional[FieldType] = None) -> FieldType:
    """
    Resolve the type for a vision field.

    Unknown labels read as TEXT.  When the OCR field already had a specific
    type (not TEXT/UNKNOWN) and vision only says TEXT, the OCR type stays.
    """
    mapped = FieldType.from_label(vision_type, FieldType.TEXT)
    if mapped in (FieldType.UNKNOWN, FieldType.STATIC_LABEL):
        mapped = FieldType.TEXT
    if existing is not None and existing not in _GENERIC_TYPES and mapped == FieldType.TEXT:
        return existing
    return mapped


def fix_field_type(field: FormField) -> FormField:
    """CHECKBOX fields named like reference numbers ("Division #", "ID") become TEXT."""
    if field.field_type != FieldType.CHECKBOX:
        return field
    name = field.field_name.lower()
    if any(marker in name for marker in REFERENCE_MARKERS):
        return replace(field, field_type=FieldType.TEXT)
    return field


def _best_match(vision_field: VisionField, ocr_fields: Sequence[FormField], matched: Set[int],
                config: PipelineConfig) -> Optional[int]:
    best_idx = None
    best_score = 0.0
    best_iou = best_sim = 0.0
    for idx, ocr_field in enumerate(ocr_fields):
        if idx in matched:
            continue
        iou = compute_iou(ocr_field.bounding_box, vision_field.bounding_box)
        sim = name_similarity(ocr_field.field_name, vision_field.name)
        score = max(iou, sim)
        if score > best_score:
            best_idx, best_score, best_iou, best_sim = idx, score, iou, sim

    if best_idx is None:
        return None
    if best_iou >= config.iou_match_threshold or best_sim >= config.name_similarity_threshold:
        return best_idx
    return None


def merge_page(ocr_fields: Sequence[FormField], vision_fields: Sequence[VisionField],
               false_positives: Sequence[str], form_id: str, page: int,
               config: PipelineConfig = CONFIG) -> List[FormField]:
    """
    Reconcile one page's OCR fields with its vision fields.

    Args:
        ocr_fields: OCR fields on ``page``
        vision_fields: Vision fields for ``page``
        false_positives: Names vision judged not fillable
        form_id: Owning form id for added fields
        page: 1-based page number

    Returns:
        Upgraded matches, then added vision fields, then kept OCR fields
    """
    matched_ocr: Set[int] = set()
    matched_vision: Set[int] = set()
    result: List[FormField] = []

    # Phase 1: match & upgrade
    for vi, vision_field in enumerate(vision_fields):
        if not vision_field.is_fillable:
            continue
        idx = _best_match(vision_field, ocr_fields, matched_ocr, config)
        if idx is None:
            continue
        matched_ocr.add(idx)
        matched_vision.add(vi)
        ocr_field = ocr_fields[idx]
        result.append(replace(
            ocr_field,
            field_type=map_vision_field_type(vision_field.field_type, ocr_field.field_type),
            required=vision_field.required or ocr_field.required,
        ))

    # Phase 2: add missing
    added = 0
    for vi, vision_field in enumerate(vision_fields):
        if vi in matched_vision or not vision_field.is_fillable or vision_field.bounding_box is None:
            continue
        result.append(FormField(
            id=new_field_id(),
            form_id=form_id,
            field_name=vision_field.name,
            field_type=map_vision_field_type(vision_field.field_type),
            original_text=vision_field.name,
            bounding_box=vision_field.bounding_box.with_page(page),
            confidence=config.vision_field_confidence,
            required=vision_field.required,
            page=page,
        ))
        added += 1

    # Phase 3: remove false positives (unmatched OCR fields only)
    removed = 0
    for idx, ocr_field in enumerate(ocr_fields):
        if idx in matched_ocr:
            continue
        if any(fuzzy_name_match(ocr_field.field_name, fp) for fp in false_positives):
            removed += 1
            continue
        result.append(ocr_field)

    logger.info("Page %d merge: %d matched, %d added, %d removed as false positives",
                page, len(matched_ocr), added, removed)
    return [fix_field_type(f) for f in result]


def strip_table_pattern_fields(fields: Iterable[FormField], pages: Set[int],
                               cell_ids: AbstractSet[str] = frozenset()) -> List[FormField]:
    """
    Drop OCR table-cell fields on pages whose tables were regenerated.

    A field goes when it is named "<Header> (Row N)" or its id is one of
    ``cell_ids`` (cells of single-row tables carry the bare header name).
    """
    return [
        f for f in fields
        if not (f.page in pages and (f.id in cell_ids or is_table_field(f.field_name)))
    ]


def merge_all_pages(ocr_fields: Sequence[FormField], page_results: Dict[int, VisionPageResult],
                    form_id: str, table_generated_fields: Sequence[FormField] = (),
                    table_pages: Optional[Set[int]] = None,
                    table_cell_ids: AbstractSet[str] = frozenset(),
                    config: PipelineConfig = CONFIG) -> List[FormField]:
    """
    Build the final field list for a document.

    Args:
        ocr_fields: All OCR candidates
        page_results: Vision result per 1-based page (missing or degraded
            pages pass through unchanged)
        form_id: Owning form id
        table_generated_fields: Output of the table field generator
        table_pages: Pages whose OCR tables went through the generator;
            defaults to the pages present in ``table_generated_fields``
        table_cell_ids: Ids of OCR fields that came from those tables

    Returns:
        Merged fields followed by the generated table fields
    """
    if table_pages is None:
        table_pages = {f.page for f in table_generated_fields}

    count_before = len(ocr_fields)
    remaining = strip_table_pattern_fields(ocr_fields, table_pages, table_cell_ids)
    if len(remaining) < count_before:
        logger.info("Replaced %d OCR table-cell fields with generated table fields",
                    count_before - len(remaining))

    by_page: Dict[int, List[FormField]] = {}
    for f in remaining:
        by_page.setdefault(f.page, []).append(f)

    merged: List[FormField] = []
    for page in sorted(set(by_page) | set(page_results)):
        page_fields = by_page.get(page, [])
        result = page_results.get(page)
        if result is None or result.is_degraded:
            merged.extend(page_fields)
            continue
        merged.extend(merge_page(page_fields, result.fields, result.false_positives,
                                 form_id, page, config))

    return merged + list(table_generated_fields)
