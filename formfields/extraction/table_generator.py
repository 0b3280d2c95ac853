"""
Table field generator.

Combines OCR table geometry (exact cell boxes) with the vision model's
table assessment (how many rows really exist, column types, sub-column
splits) into one field per fillable cell.  Rows OCR never saw are placed
by extrapolating from the last known row.
"""

import logging
from dataclasses import dataclass
from typing import List, Optional, Sequence

from formfields.config import CONFIG, PipelineConfig
from formfields.extraction.field_types import classify_label
from formfields.extraction.tables import table_row_name
from formfields.fields import (
    BoundingBox, FieldType, FormField, TableStructure, VisionPageResult,
    VisionTableInfo, new_field_id,
)
from formfields.utils.text import normalize_name

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ExpandedColumn:
    """One output column; sub-columns share their parent's ``source_col``."""
    header: str
    field_type: FieldType
    left: float
    width: float
    source_col: int          # 1-based OCR column
    is_sub_column: bool = False


def effective_row_count(structure: TableStructure, vision_info: Optional[VisionTableInfo],
                        config: PipelineConfig = CONFIG) -> int:
    """OCR row count, raised (never lowered) by the vision count capped at ``max_table_rows``."""
    if vision_info is None:
        return structure.detected_row_count
    vision_rows = min(vision_info.actual_data_row_count, config.max_table_rows)
    if vision_rows < vision_info.actual_data_row_count:
        logger.warning("Vision row count %d capped at %d", vision_info.actual_data_row_count, vision_rows)
    return max(structure.detected_row_count, vision_rows)


def _ocr_column_type(structure: TableStructure, col: int, header: str) -> FieldType:
    cells = [c for c in structure.cells if c.col == col]
    if cells and any(c.is_checkbox for c in cells):
        return FieldType.CHECKBOX
    return classify_label(header)


def expand_columns(structure: TableStructure, vision_info: Optional[VisionTableInfo],
                   config: PipelineConfig = CONFIG) -> List[ExpandedColumn]:
    """
    Apply sub-column splits and resolve each column's type.

    Type precedence: the vision column type, then OCR (a column holding
    checkbox cells), then the keyword rules on the header.  Sub-columns
    split the parent width evenly and default to CHECKBOX.
    """
    column_types = vision_info.column_types if vision_info else []
    sub_columns = vision_info.sub_columns if vision_info else []

    columns = []
    for idx, header in enumerate(structure.header_texts):
        col = idx + 1
        left = structure.column_left_edges[idx] if idx < len(structure.column_left_edges) else 0.0
        width = structure.column_widths[idx] if idx < len(structure.column_widths) else config.default_column_width

        split = next(
            (sc for sc in sub_columns if normalize_name(sc.parent_header) == normalize_name(header)),
            None,
        )
        if split is not None and len(split.sub_headers) > 1:
            sub_width = width / len(split.sub_headers)
            for sub_idx, sub_header in enumerate(split.sub_headers):
                columns.append(ExpandedColumn(
                    header="%s: %s" % (header, sub_header),
                    field_type=FieldType.CHECKBOX,
                    left=left + sub_idx * sub_width,
                    width=sub_width,
                    source_col=col,
                    is_sub_column=True,
                ))
            continue

        if idx < len(column_types) and column_types[idx]:
            field_type = FieldType.from_label(column_types[idx])
        else:
            field_type = _ocr_column_type(structure, col, header)
        columns.append(ExpandedColumn(header, field_type, left, width, col))
    return columns


def _extrapolated_top(structure: TableStructure, data_row: int) -> float:
    """Top edge for a row, from OCR's row tops or by stepping the average height."""
    row_tops = structure.row_top_edges
    if data_row <= len(row_tops):
        return row_tops[data_row - 1]
    # With no data rows at all, the header row is the last known row.
    last_top = row_tops[-1] if row_tops else structure.table_bounding_box.top
    row_delta = data_row - len(row_tops)
    return last_top + row_delta * structure.average_row_height


def cell_bounding_box(structure: TableStructure, column: ExpandedColumn,
                      data_row: int, page: int) -> BoundingBox:
    """
    Geometry for one generated cell.

    Inside OCR's row range the OCR cell box is reused (sub-columns keep its
    vertical span with their own horizontal span).  Elsewhere the box is
    extrapolated from the column edges and the average row height.
    """
    if data_row <= structure.detected_row_count:
        cell = structure.cell_at(data_row, column.source_col)
        if cell is not None:
            if column.is_sub_column:
                return BoundingBox(column.left, cell.bounding_box.top, column.width,
                                   cell.bounding_box.height, page)
            return cell.bounding_box.with_page(page)

    return BoundingBox(
        column.left,
        _extrapolated_top(structure, data_row),
        column.width,
        structure.average_row_height,
        page,
    )


def generate_table_fields(structure: TableStructure, vision_info: Optional[VisionTableInfo],
                          form_id: str, page: int,
                          config: PipelineConfig = CONFIG) -> List[FormField]:
    """
    Emit one field per (row, expanded column) of a table.

    Args:
        structure: OCR table geometry
        vision_info: The matched vision assessment, if any
        form_id: Owning form id
        page: 1-based page number

    Returns:
        Fields in row-major order
    """
    ocr_rows = structure.detected_row_count
    row_count = effective_row_count(structure, vision_info, config)
    columns = expand_columns(structure, vision_info, config)

    logger.debug("Table page=%d: %d columns, %d OCR rows, %d effective rows",
                 page, len(columns), ocr_rows, row_count)

    fields = []
    for data_row in range(1, row_count + 1):
        in_ocr_range = data_row <= ocr_rows
        for column in columns:
            value = None
            if in_ocr_range and not column.is_sub_column:
                cell = structure.cell_at(data_row, column.source_col)
                if cell is not None and cell.is_checkbox:
                    value = "true" if cell.is_selected else ""

            fields.append(FormField(
                id=new_field_id(),
                form_id=form_id,
                field_name=table_row_name(column.header, data_row, row_count),
                field_type=column.field_type,
                original_text=column.header,
                value=value,
                bounding_box=cell_bounding_box(structure, column, data_row, page),
                confidence=(config.table_ocr_row_confidence if in_ocr_range
                            else config.table_extrapolated_row_confidence),
                page=page,
            ))

    logger.debug("Generated %d table fields for page %d", len(fields), page)
    return fields


# ============================================================================
# Matching OCR tables to vision tables
# ============================================================================

def header_overlap(structure: TableStructure, vision_info: VisionTableInfo) -> int:
    ocr_headers = {normalize_name(h) for h in structure.header_texts if h}
    vision_headers = {normalize_name(h) for h in vision_info.header_texts if h}
    return len(ocr_headers & vision_headers)


def match_vision_table(structure: TableStructure,
                       vision_tables: Sequence[VisionTableInfo]) -> Optional[VisionTableInfo]:
    """The vision table sharing the most header texts (at least one), or None."""
    best = None
    best_overlap = 0
    for info in vision_tables:
        overlap = header_overlap(structure, info)
        if overlap > best_overlap:
            best, best_overlap = info, overlap
    return best


def generate_page_table_fields(structures: Sequence[TableStructure],
                               vision_result: Optional[VisionPageResult],
                               form_id: str, page: int,
                               config: PipelineConfig = CONFIG) -> List[FormField]:
    """
    Generate fields for every OCR table on a page.

    When the vision pass reported tables, an OCR table matching none of
    them is taken as not patient-fillable (office-use grids) and skipped.
    Without vision tables every OCR table is generated from OCR alone.
    """
    vision_tables = []
    if vision_result is not None and not vision_result.is_degraded:
        vision_tables = vision_result.tables

    fields = []
    for structure in structures:
        match = match_vision_table(structure, vision_tables)
        if match is None and vision_tables:
            logger.info("Page %d: skipping table %s (no vision counterpart)", page, structure.header_texts)
            continue
        fields.extend(generate_table_fields(structure, match, form_id, page, config))
    return fields
