"""
OCR table parsing: cell grid, header row detection, fillable cell fields,
and the geometry summary (``TableStructure``) used by the table field
generator.
"""

import logging
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple

import numpy as np

from formfields.config import CONFIG, PipelineConfig
from formfields.extraction.blocks import BlockGraph, CellBlock, TableBlock
from formfields.extraction.field_types import classify_label
from formfields.fields import (
    BoundingBox, CellInfo, FieldType, FormField, TableStructure, new_field_id,
)
from formfields.utils.bbox import is_speckle, union_box
from formfields.utils.text import alpha_count, is_placeholder

logger = logging.getLogger(__name__)

HEADER_ROW = "header"
LABEL_VALUE = "label_value"


@dataclass(frozen=True)
class GridCell:
    text: str
    bbox: Optional[BoundingBox]
    confidence: float
    is_checkbox: bool = False
    is_selected: bool = False

    @property
    def is_blank(self) -> bool:
        return is_placeholder(self.text)


@dataclass(frozen=True)
class TableLayout:
    """How a grid is read: header row(s) over data rows, or label/value pairs."""
    kind: str
    header_rows: int = 0
    headers: Tuple[str, ...] = ()


Grid = Dict[Tuple[int, int], GridCell]


def table_row_name(header: str, row: int, row_count: int) -> str:
    """``"<Header> (Row N)"`` for multi-row tables, bare header otherwise."""
    if row_count > 1:
        return "%s (Row %d)" % (header, row)
    return header


# ============================================================================
# Grid construction
# ============================================================================

def build_grid(graph: BlockGraph, table: TableBlock) -> Tuple[Grid, int, int]:
    """
    Map (row, col) -> cell for one table.

    Returns:
        (grid, row_count, column_count); rows and columns are 1-indexed.
    """
    grid: Grid = {}
    for cell in graph.children(table.id, CellBlock):
        if cell.row <= 0 or cell.col <= 0:
            continue
        text, selection = graph.text_and_selection(cell.id)
        grid[(cell.row, cell.col)] = GridCell(
            text=text,
            bbox=cell.bbox,
            confidence=cell.confidence,
            is_checkbox=selection is not None,
            is_selected=bool(selection and selection.selected),
        )

    if not grid:
        return grid, 0, 0
    n_rows = max(r for r, _ in grid)
    n_cols = max(c for _, c in grid)
    return grid, n_rows, n_cols


def _row_texts(grid: Grid, row: int, n_cols: int) -> List[str]:
    texts = []
    for col in range(1, n_cols + 1):
        cell = grid.get((row, col))
        texts.append("" if cell is None or cell.is_blank else cell.text.strip())
    return texts


# ============================================================================
# Header detection
# ============================================================================

def detect_layout(grid: Grid, n_rows: int, n_cols: int) -> Optional[TableLayout]:
    """
    Decide how to read a table grid.

    Tried in order:
    1. Row 1 is a complete header.
    2. Row 2 is a complete header (two-row "super-header" layouts).
    3. Rows 1+2 merged: row 2 text preferred, row 1 as fallback, at most
       one column missing (filled with a generic "Column N").  Row 2 has
       to fill at least one of row 1's blanks.
    4. No header, but column 1 is populated in most rows: a label/value
       table (column 1 labels, columns 2+ values).

    Returns:
        The layout, or None when the grid can't be read as a form table.
    """
    if n_rows == 0 or n_cols == 0:
        return None

    row1 = _row_texts(grid, 1, n_cols)
    if all(row1):
        return TableLayout(HEADER_ROW, header_rows=1, headers=tuple(row1))

    if n_rows >= 2:
        row2 = _row_texts(grid, 2, n_cols)
        if all(row2):
            return TableLayout(HEADER_ROW, header_rows=2, headers=tuple(row2))

        merged = [r2 or r1 for r1, r2 in zip(row1, row2)]
        missing = [i for i, text in enumerate(merged) if not text]
        # Row 2 must complete something row 1 left open, otherwise two
        # label rows of a label/value table would read as a header.
        fills_gap = any(r2 and not r1 for r1, r2 in zip(row1, row2))
        if fills_gap and len(missing) <= 1 and len(missing) < n_cols:
            for i in missing:
                merged[i] = "Column %d" % (i + 1)
            return TableLayout(HEADER_ROW, header_rows=2, headers=tuple(merged))

    if n_cols >= 2:
        labelled_rows = sum(
            1 for row in range(1, n_rows + 1)
            if (row, 1) in grid and not grid[(row, 1)].is_blank
        )
        if labelled_rows > n_rows / 2:
            return TableLayout(LABEL_VALUE)

    return None


# ============================================================================
# Geometry summary
# ============================================================================

def _column_geometry(grid: Grid, layout: TableLayout, n_rows: int, n_cols: int,
                     table_bbox: BoundingBox) -> Tuple[List[float], List[float]]:
    lefts: List[float] = []
    widths: List[float] = []
    for col in range(1, n_cols + 1):
        ref = grid.get((layout.header_rows, col)) if layout.header_rows else None
        bbox = ref.bbox if ref is not None else None
        if bbox is None:
            for row in range(1, n_rows + 1):
                cell = grid.get((row, col))
                if cell is not None and cell.bbox is not None:
                    bbox = cell.bbox
                    break
        if bbox is None:
            width = table_bbox.width / n_cols
            lefts.append(table_bbox.left + (col - 1) * width)
            widths.append(width)
        else:
            lefts.append(bbox.left)
            widths.append(bbox.width)
    return lefts, widths


def build_table_structure(grid: Grid, layout: TableLayout, n_rows: int, n_cols: int,
                          table_bbox: BoundingBox, page: int) -> TableStructure:
    """Summarize a header table's geometry independent of its content."""
    header_rows = layout.header_rows
    data_rows = list(range(header_rows + 1, n_rows + 1))

    cells: List[CellInfo] = []
    row_tops: List[float] = []
    row_heights: List[float] = []
    for data_row, row in enumerate(data_rows, start=1):
        row_boxes = []
        for col in range(1, n_cols + 1):
            cell = grid.get((row, col))
            if cell is None or cell.bbox is None:
                continue
            row_boxes.append(cell.bbox)
            cells.append(CellInfo(
                row=data_row,
                col=col,
                bounding_box=cell.bbox,
                text=cell.text,
                is_checkbox=cell.is_checkbox,
                is_selected=cell.is_selected,
            ))
        if row_boxes:
            row_tops.append(float(np.min([b.top for b in row_boxes])))
            row_heights.append(float(np.max([b.height for b in row_boxes])))

    if row_heights:
        average_row_height = float(np.mean(row_heights))
    else:
        header_boxes = [grid[(header_rows, c)].bbox for c in range(1, n_cols + 1)
                        if (header_rows, c) in grid and grid[(header_rows, c)].bbox is not None]
        if header_boxes:
            average_row_height = float(np.mean([b.height for b in header_boxes]))
        else:
            average_row_height = table_bbox.height / max(n_rows, 1)

    lefts, widths = _column_geometry(grid, layout, n_rows, n_cols, table_bbox)

    return TableStructure(
        page=page,
        table_bounding_box=table_bbox,
        header_texts=list(layout.headers),
        column_left_edges=lefts,
        column_widths=widths,
        row_top_edges=row_tops,
        average_row_height=average_row_height,
        detected_row_count=len(data_rows),
        cells=cells,
    )


# ============================================================================
# Cell fields
# ============================================================================

def _cell_field(form_id: str, name: str, header: str, cell: GridCell,
                label_bbox: Optional[BoundingBox], page: int,
                config: PipelineConfig) -> Optional[FormField]:
    if is_speckle(cell.bbox, config.min_box_width, config.min_box_height):
        return None
    if cell.confidence < config.min_field_confidence:
        return None

    if cell.is_checkbox:
        field_type = FieldType.CHECKBOX
        value = "true" if cell.is_selected else ""
    elif cell.is_blank:
        field_type = classify_label(header)
        value = None
    else:
        return None

    return FormField(
        id=new_field_id(),
        form_id=form_id,
        field_name=name,
        field_type=field_type,
        original_text=header,
        value=value,
        bounding_box=cell.bbox,
        label_bounding_box=label_bbox,
        confidence=cell.confidence,
        page=page,
    )


def _header_table_fields(grid: Grid, layout: TableLayout, n_rows: int, n_cols: int,
                         form_id: str, page: int, config: PipelineConfig) -> List[FormField]:
    fields = []
    data_row_count = n_rows - layout.header_rows
    for row in range(layout.header_rows + 1, n_rows + 1):
        data_row = row - layout.header_rows
        for col in range(1, n_cols + 1):
            cell = grid.get((row, col))
            if cell is None:
                continue
            header = layout.headers[col - 1]
            header_cell = grid.get((layout.header_rows, col))
            field = _cell_field(
                form_id,
                table_row_name(header, data_row, data_row_count),
                header,
                cell,
                header_cell.bbox if header_cell else None,
                page,
                config,
            )
            if field is not None:
                fields.append(field)
    return fields


def _label_value_fields(grid: Grid, n_rows: int, n_cols: int, form_id: str,
                        page: int, config: PipelineConfig) -> List[FormField]:
    fields = []
    value_columns = n_cols - 1
    for row in range(1, n_rows + 1):
        label_cell = grid.get((row, 1))
        if label_cell is None or label_cell.is_blank:
            continue
        label = label_cell.text.strip().rstrip(':').strip()
        if alpha_count(label) < 2:
            continue
        for col in range(2, n_cols + 1):
            cell = grid.get((row, col))
            if cell is None:
                continue
            name = label if value_columns == 1 else "%s (Column %d)" % (label, col - 1)
            field = _cell_field(form_id, name, label, cell, label_cell.bbox, page, config)
            if field is not None:
                fields.append(field)
    return fields


def extract_table(graph: BlockGraph, table: TableBlock, form_id: str,
                  config: PipelineConfig = CONFIG) -> Tuple[List[FormField], Optional[TableStructure]]:
    """
    Parse one OCR table into fillable cell fields and a geometry summary.

    Label/value tables yield fields but no ``TableStructure`` (they have no
    header row to extend).  Tables and cells below the confidence gate are
    dropped like any other low-confidence candidate.

    Returns:
        (fields, structure-or-None)
    """
    if table.confidence < config.min_field_confidence:
        logger.debug("Table %s on page %d: confidence %.1f below gate, skipped",
                     table.id, table.page, table.confidence)
        return [], None

    grid, n_rows, n_cols = build_grid(graph, table)
    layout = detect_layout(grid, n_rows, n_cols)
    if layout is None:
        logger.debug("Table %s on page %d: no header or label column, skipped", table.id, table.page)
        return [], None

    table_bbox = table.bbox or union_box(c.bbox for c in grid.values() if c.bbox is not None)
    if table_bbox is None:
        return [], None

    if layout.kind == LABEL_VALUE:
        fields = _label_value_fields(grid, n_rows, n_cols, form_id, table.page, config)
        logger.debug("Label/value table on page %d: %d fields", table.page, len(fields))
        return fields, None

    fields = _header_table_fields(grid, layout, n_rows, n_cols, form_id, table.page, config)
    structure = build_table_structure(grid, layout, n_rows, n_cols, table_bbox, table.page)
    logger.debug("Table on page %d: headers=%s, %d data rows, %d fields",
                 table.page, list(layout.headers), structure.detected_row_count, len(fields))
    return fields, structure
