"""
OCR block parser.

Turns the provider's block graph into fillable field candidates, table
structures, and static (non-fillable) text blocks.

Steps:
1. Key/value pairs -> candidates (type, junk filter, geometry, confidence gate)
2. Orphan checkboxes -> candidates labelled from nearby lines
3. Tables -> cell candidates + TableStructure
4. Legal-notice section removal
5. Confidence-ordered deduplication
6. Static text collection
"""

import logging
import re
from dataclasses import dataclass, field
from typing import Dict, FrozenSet, Iterable, List, Optional, Union

from formfields.config import CONFIG, PipelineConfig
from formfields.extraction.blocks import (
    BlockGraph, KeyValueBlock, LineBlock, SelectionBlock, TableBlock,
)
from formfields.extraction.field_types import classify_label
from formfields.extraction.tables import extract_table
from formfields.fields import (
    FieldType, FormField, StaticTextBlock, TableStructure, new_field_id,
)
from formfields.utils.bbox import (
    above_gap, in_vertical_band, is_speckle, left_gap, right_gap, same_page_iou,
)
from formfields.utils.text import alpha_count, is_numeric_only, looks_like_prose

logger = logging.getLogger(__name__)

SECTION_HEADER_RE = re.compile(r'^\s*(section|part)\s+([ivxlc]+|\d+)\b', re.IGNORECASE)
BAR_ONLY_RE = re.compile(r'^[\s=_\-*#|~.]+$')


@dataclass(frozen=True)
class OcrParseResult:
    fields: List[FormField] = field(default_factory=list)
    tables: List[TableStructure] = field(default_factory=list)
    static_text: List[StaticTextBlock] = field(default_factory=list)
    # Ids of cell fields from tables that also produced a TableStructure
    table_cell_ids: FrozenSet[str] = frozenset()


def _log_step(name: str, before: int, after: int) -> None:
    """Log a parser step, using INFO when candidates are removed."""
    delta = before - after
    if delta > 0:
        logger.info("  [%s] %d → %d candidates (removed %d)", name, before, after, delta)
    else:
        logger.debug("  [%s] %d candidates (no change)", name, before)


def _clean_label(text: str) -> str:
    return text.strip().rstrip(':').strip()


# ============================================================================
# Key/value pairs
# ============================================================================

def is_junk_pair(key_text: str, value_text: str, config: PipelineConfig = CONFIG) -> bool:
    """
    Reject key/value pairs that are not real form fields.

    - keys with fewer than 2 letters, or purely numeric keys
    - values longer than ``max_value_length`` (a paragraph, not an entry)
    - key and value both reading like prose
    """
    if alpha_count(key_text) < 2 or is_numeric_only(key_text):
        return True
    if len(value_text) > config.max_value_length:
        return True
    if looks_like_prose(key_text) and looks_like_prose(value_text):
        return True
    return False


def key_value_fields(graph: BlockGraph, form_id: str,
                     config: PipelineConfig = CONFIG) -> List[FormField]:
    """Build candidates from every KEY block and its paired VALUE block."""
    fields = []
    rejected = {"junk": 0, "geometry": 0, "confidence": 0}

    for key in graph.of_type(KeyValueBlock):
        if not key.is_key:
            continue

        key_text, _ = graph.text_and_selection(key.id)
        key_text = _clean_label(key_text)
        value_id = graph.value_of.get(key.id)
        value_block = graph.get(value_id) if value_id else None
        value_text, selection = ("", None)
        if value_block is not None:
            value_text, selection = graph.text_and_selection(value_block.id)

        if not key_text or is_junk_pair(key_text, value_text, config):
            rejected["junk"] += 1
            continue

        if selection is not None:
            field_type = FieldType.CHECKBOX
            value = "true" if selection.selected else ""
        else:
            field_type = classify_label(key_text)
            value = value_text or None

        # The value box is the fillable area; the key box is the printed label.
        bbox = value_block.bbox if value_block is not None and value_block.bbox is not None else key.bbox
        if is_speckle(bbox, config.min_box_width, config.min_box_height):
            rejected["geometry"] += 1
            continue

        if key.confidence < config.min_field_confidence:
            rejected["confidence"] += 1
            continue

        fields.append(FormField(
            id=new_field_id(),
            form_id=form_id,
            field_name=key_text,
            field_type=field_type,
            original_text=key_text,
            value=value,
            bounding_box=bbox,
            label_bounding_box=key.bbox,
            confidence=key.confidence,
            page=key.page,
        ))

    logger.debug("  [key_value] %d candidates (rejected: %s)", len(fields), rejected)
    return fields


# ============================================================================
# Orphan checkboxes
# ============================================================================

def find_checkbox_label(checkbox: SelectionBlock, lines: Iterable[LineBlock],
                        config: PipelineConfig = CONFIG) -> Optional[LineBlock]:
    """
    Pick the line that labels a free-standing checkbox.

    Preference order:
    1. A line to the left, inside a narrow vertical band around the box
    2. A line immediately above that overlaps the box horizontally
    3. A line to the right, inside the same band

    Returns None when nothing is close enough.
    """
    box = checkbox.bbox
    best_left = best_above = best_right = None
    left_dist = above_dist = right_dist = float("inf")

    for line in lines:
        if line.bbox is None or not line.text.strip():
            continue
        if in_vertical_band(line.bbox, box, config.orphan_band_ratio):
            if line.bbox.left < box.left:
                gap = left_gap(line.bbox, box)
                if gap is not None and gap <= config.orphan_max_gap and gap < left_dist:
                    best_left, left_dist = line, gap
            elif line.bbox.left >= box.left:
                gap = right_gap(line.bbox, box)
                if gap is not None and gap <= config.orphan_max_gap and gap < right_dist:
                    best_right, right_dist = line, gap
        elif line.bbox.top < box.top:
            gap = above_gap(line.bbox, box)
            if gap is not None and gap <= config.orphan_max_above_gap and gap < above_dist:
                best_above, above_dist = line, gap

    return best_left or best_above or best_right


def orphan_checkbox_fields(graph: BlockGraph, form_id: str,
                           config: PipelineConfig = CONFIG) -> List[FormField]:
    """Recover checkboxes that no key/value pair or table cell owns."""
    lines_by_page: Dict[int, List[LineBlock]] = {}
    for line in graph.of_type(LineBlock):
        lines_by_page.setdefault(line.page, []).append(line)

    fields = []
    for checkbox in graph.of_type(SelectionBlock):
        if checkbox.id in graph.attached_selection_ids:
            continue
        if is_speckle(checkbox.bbox, config.min_box_width, config.min_box_height):
            continue
        if checkbox.confidence < config.min_field_confidence:
            continue

        label = find_checkbox_label(checkbox, lines_by_page.get(checkbox.page, []), config)
        if label is None:
            continue
        name = _clean_label(label.text)
        if alpha_count(name) < 2:
            continue

        fields.append(FormField(
            id=new_field_id(),
            form_id=form_id,
            field_name=name,
            field_type=FieldType.CHECKBOX,
            original_text=name,
            value="true" if checkbox.selected else "",
            bounding_box=checkbox.bbox,
            label_bounding_box=label.bbox,
            confidence=checkbox.confidence,
            page=checkbox.page,
        ))

    logger.debug("  [orphan_checkboxes] recovered %d", len(fields))
    return fields


# ============================================================================
# Legal notice cut-off, dedup, static text
# ============================================================================

def legal_notice_cutoffs(graph: BlockGraph, config: PipelineConfig = CONFIG) -> Dict[int, float]:
    """Top edge of the first legal-notice header line, per page."""
    cutoffs: Dict[int, float] = {}
    headers = [h.lower() for h in config.legal_notice_headers]
    for line in graph.of_type(LineBlock):
        if line.bbox is None:
            continue
        text = line.text.lower()
        if any(h in text for h in headers):
            current = cutoffs.get(line.page)
            if current is None or line.bbox.top < current:
                cutoffs[line.page] = line.bbox.top
    return cutoffs


def remove_notice_sections(fields: List[FormField], cutoffs: Dict[int, float]) -> List[FormField]:
    """Drop fields positioned at or below their page's legal-notice header."""
    if not cutoffs:
        return fields
    kept = []
    for f in fields:
        cutoff = cutoffs.get(f.page)
        box = f.bounding_box or f.label_bounding_box
        if cutoff is not None and box is not None and box.top >= cutoff:
            continue
        kept.append(f)
    return kept


def remove_notice_tables(tables: List[TableStructure], cutoffs: Dict[int, float]) -> List[TableStructure]:
    """Drop table structures starting at or below their page's legal-notice header."""
    kept = []
    for table in tables:
        cutoff = cutoffs.get(table.page)
        if cutoff is not None and table.table_bounding_box.top >= cutoff:
            logger.info("  [legal_notice] table %s on page %d is notice text, dropped",
                        table.header_texts, table.page)
            continue
        kept.append(table)
    return kept


def deduplicate_fields(fields: List[FormField], iou_threshold: float = None) -> List[FormField]:
    """
    Keep the most confident of any group of overlapping same-page fields.

    Candidates are visited in descending confidence; one is kept only if
    its IoU with every already-kept field on the same page is below
    ``iou_threshold``.
    """
    if iou_threshold is None:
        iou_threshold = CONFIG.dedup_iou_threshold

    kept: List[FormField] = []
    for candidate in sorted(fields, key=lambda f: f.confidence, reverse=True):
        if candidate.bounding_box is None:
            kept.append(candidate)
            continue
        duplicate = any(
            same_page_iou(candidate.bounding_box, other.bounding_box) >= iou_threshold
            for other in kept
        )
        if not duplicate:
            kept.append(candidate)
    return kept


def is_section_header(text: str) -> bool:
    """Bar-style headers ("SECTION III: ...") and pure rule lines."""
    return bool(SECTION_HEADER_RE.match(text) or BAR_ONLY_RE.match(text))


def collect_static_text(graph: BlockGraph, cutoffs: Dict[int, float],
                        config: PipelineConfig = CONFIG) -> List[StaticTextBlock]:
    """Line text worth translating, minus short strings, section bars and notice text."""
    blocks = []
    for line in graph.of_type(LineBlock):
        text = line.text.strip()
        if line.bbox is None or len(text) < config.min_static_text_length:
            continue
        if is_section_header(text):
            continue
        cutoff = cutoffs.get(line.page)
        if cutoff is not None and line.bbox.top >= cutoff:
            continue
        blocks.append(StaticTextBlock(text=text, bounding_box=line.bbox, page=line.page))
    return blocks


# ============================================================================
# Entry point
# ============================================================================

def parse_ocr_blocks(blocks: Union[BlockGraph, Iterable[Dict]], form_id: str,
                     config: PipelineConfig = CONFIG) -> OcrParseResult:
    """
    Parse an OCR block graph into field candidates, tables and static text.

    Args:
        blocks: A ``BlockGraph`` or the provider's raw block list
        form_id: Owning form id stamped onto every candidate
        config: Thresholds

    Returns:
        ``OcrParseResult``
    """
    graph = blocks if isinstance(blocks, BlockGraph) else BlockGraph.from_textract(blocks)
    logger.info("Parsing OCR blocks (%d typed blocks, pages %s)", len(graph), graph.pages())

    candidates = key_value_fields(graph, form_id, config)
    candidates.extend(orphan_checkbox_fields(graph, form_id, config))

    tables: List[TableStructure] = []
    table_cell_ids = set()
    for table in graph.of_type(TableBlock):
        table_fields, structure = extract_table(graph, table, form_id, config)
        candidates.extend(table_fields)
        if structure is not None:
            tables.append(structure)
            table_cell_ids.update(f.id for f in table_fields)

    count_before = len(candidates)
    cutoffs = legal_notice_cutoffs(graph, config)
    candidates = remove_notice_sections(candidates, cutoffs)
    _log_step("legal_notice", count_before, len(candidates))
    tables = remove_notice_tables(tables, cutoffs)

    count_before = len(candidates)
    candidates = deduplicate_fields(candidates, config.dedup_iou_threshold)
    _log_step("dedup", count_before, len(candidates))

    static_text = collect_static_text(graph, cutoffs, config)

    logger.info("OCR parse: %d fields, %d tables, %d static text blocks",
                len(candidates), len(tables), len(static_text))
    return OcrParseResult(fields=candidates, tables=tables, static_text=static_text,
                          table_cell_ids=frozenset(table_cell_ids))
