"""
Data model shared by the parser, the vision analyzer, the table generator
and the merger.

Everything here is an immutable value.  Fields are produced once per
document analysis; "upgrading" a field means building a copy with
``dataclasses.replace``.
"""

import math
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional


class FieldType(str, Enum):
    TEXT = "TEXT"
    NUMBER = "NUMBER"
    DATE = "DATE"
    CHECKBOX = "CHECKBOX"
    RADIO = "RADIO"
    SIGNATURE = "SIGNATURE"
    DROPDOWN = "DROPDOWN"
    STATIC_LABEL = "STATIC_LABEL"
    UNKNOWN = "UNKNOWN"

    @classmethod
    def from_label(cls, label: Optional[str], default: "FieldType" = None) -> "FieldType":
        """Map a free-form type label (e.g. from a model reply) onto the enum."""
        if default is None:
            default = cls.TEXT
        if not label:
            return default
        try:
            return cls(str(label).strip().upper())
        except ValueError:
            return default


def new_field_id() -> str:
    return str(uuid.uuid4())


@dataclass(frozen=True)
class BoundingBox:
    """Normalized rectangle on a page.

    All coordinates are fractions of the page dimensions; ``page`` is
    1-indexed.  Width and height must be strictly positive.
    """
    left: float
    top: float
    width: float
    height: float
    page: int = 1

    def __post_init__(self):
        if not (self.width > 0 and self.height > 0):
            raise ValueError(
                "BoundingBox width and height must be > 0 (got %r x %r)" % (self.width, self.height)
            )

    @property
    def right(self) -> float:
        return self.left + self.width

    @property
    def bottom(self) -> float:
        return self.top + self.height

    @property
    def area(self) -> float:
        return self.width * self.height

    @property
    def center_y(self) -> float:
        return self.top + self.height / 2

    def with_page(self, page: int) -> "BoundingBox":
        return BoundingBox(self.left, self.top, self.width, self.height, page)

    @classmethod
    def from_dict(cls, data: Any, page: int = 1) -> Optional["BoundingBox"]:
        """Build a box from ``{left, top, width, height}`` (any key case).

        Returns None when the mapping is missing, malformed, non-finite or
        degenerate.
        """
        if not isinstance(data, dict):
            return None
        lowered = {str(k).lower(): v for k, v in data.items()}
        try:
            left = float(lowered.get("left", 0.0))
            top = float(lowered.get("top", 0.0))
            width = float(lowered.get("width", 0.0))
            height = float(lowered.get("height", 0.0))
        except (TypeError, ValueError):
            return None
        if not all(math.isfinite(v) for v in (left, top, width, height)):
            return None
        if width <= 0 or height <= 0:
            return None
        return cls(left, top, width, height, page)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "left": self.left,
            "top": self.top,
            "width": self.width,
            "height": self.height,
            "page": self.page,
        }


@dataclass(frozen=True)
class FormField:
    id: str
    form_id: str
    field_name: str
    field_type: FieldType
    original_text: Optional[str] = None
    translated_text: Optional[str] = None
    value: Optional[str] = None
    bounding_box: Optional[BoundingBox] = None
    label_bounding_box: Optional[BoundingBox] = None
    confidence: float = 0.0
    required: bool = False
    page: int = 1

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "formId": self.form_id,
            "fieldName": self.field_name,
            "fieldType": self.field_type.value,
            "originalText": self.original_text,
            "translatedText": self.translated_text,
            "value": self.value,
            "boundingBox": self.bounding_box.to_dict() if self.bounding_box else None,
            "labelBoundingBox": self.label_bounding_box.to_dict() if self.label_bounding_box else None,
            "confidence": self.confidence,
            "required": self.required,
            "page": self.page,
        }


# ============================================================================
# OCR table geometry
# ============================================================================

@dataclass(frozen=True)
class CellInfo:
    """One OCR table cell, indexed relative to the table's data region."""
    row: int
    col: int
    bounding_box: BoundingBox
    text: str = ""
    is_checkbox: bool = False
    is_selected: bool = False


@dataclass(frozen=True)
class TableStructure:
    """Geometry of one OCR table, independent of its content."""
    page: int
    table_bounding_box: BoundingBox
    header_texts: List[str]
    column_left_edges: List[float]
    column_widths: List[float]
    row_top_edges: List[float]
    average_row_height: float
    detected_row_count: int
    cells: List[CellInfo] = field(default_factory=list)

    def cell_at(self, row: int, col: int) -> Optional[CellInfo]:
        for cell in self.cells:
            if cell.row == row and cell.col == col:
                return cell
        return None


@dataclass(frozen=True)
class StaticTextBlock:
    """Pre-printed, non-fillable text kept for translation and display."""
    text: str
    bounding_box: BoundingBox
    page: int


# ============================================================================
# Vision model output
# ============================================================================

@dataclass(frozen=True)
class VisionField:
    name: str
    field_type: str = "TEXT"
    bounding_box: Optional[BoundingBox] = None
    required: bool = False
    is_fillable: bool = True
    section: Optional[str] = None
    page: int = 1


@dataclass(frozen=True)
class VisionSubColumn:
    parent_header: str
    sub_headers: List[str]


@dataclass(frozen=True)
class VisionTableInfo:
    """The vision model's assessment of one table: completeness, not geometry."""
    header_texts: List[str]
    actual_data_row_count: int = 0
    column_types: List[str] = field(default_factory=list)
    sub_columns: List[VisionSubColumn] = field(default_factory=list)


VISION_OK = "ok"
VISION_DEGRADED = "degraded"


@dataclass(frozen=True)
class VisionPageResult:
    """Outcome of analysing one page.

    A degraded result carries no fields; the page falls back to OCR-only
    output.  ``reason`` says why (provider error, unparseable reply, ...).
    """
    fields: List[VisionField] = field(default_factory=list)
    tables: List[VisionTableInfo] = field(default_factory=list)
    false_positives: List[str] = field(default_factory=list)
    status: str = VISION_OK
    reason: Optional[str] = None

    @classmethod
    def degraded(cls, reason: str) -> "VisionPageResult":
        return cls(status=VISION_DEGRADED, reason=reason)

    @property
    def is_degraded(self) -> bool:
        return self.status == VISION_DEGRADED
