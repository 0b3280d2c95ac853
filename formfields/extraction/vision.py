"""
Vision page analyzer.

Sends one rendered page plus OCR context to the vision model and turns the
reply into a ``VisionPageResult``.  Nothing raised here crosses the page
boundary: provider errors and unusable replies become a degraded result
and the page keeps its OCR-only fields.
"""

import json
import logging
from typing import Any, Dict, List, Optional, Sequence

from formfields.config import CONFIG, PipelineConfig
from formfields.errors import VisionProviderError
from formfields.extraction.json_repair import extract_json_object, repair_truncated_json
from formfields.fields import (
    BoundingBox, FormField, TableStructure, VisionField, VisionPageResult,
    VisionSubColumn, VisionTableInfo,
)

logger = logging.getLogger(__name__)


# ============================================================================
# Prompts
# ============================================================================

_COMMON_RULES = """You extract fillable fields from images of medical, dental and insurance form pages.

Reply with ONLY one JSON object. No markdown fences, no commentary.

Look for:
- Text inputs (name, address, member ID)
- Dates (MM/DD/YYYY blanks, date labels)
- Checkboxes and yes/no circles
- Signature lines
- Numbers (phone, zip, group number)
- Blanks after "#" or "No." labels are TEXT or NUMBER inputs, never checkboxes

Never report:
- Section headers or titles such as "SECTION III: DEPENDENT INFORMATION"
- Instructions, policy language or other pre-printed static text
- Logos, page numbers, decorations
- The label itself; report the fillable area next to it
- Employer, administrator or office-use fields (group and division numbers,
  employer name, plan details, contract dates) that the patient does not fill
"""

SYSTEM_PROMPT_WITH_TABLES = _COMMON_RULES + """
Tables on this page were already located by OCR:
- Do NOT return per-cell boxes for table cells. Describe each table in "tables".
- Count ALL fillable data rows, including completely empty ones.
- Give each column's type (TEXT, NUMBER, DATE, CHECKBOX, SIGNATURE).
- When one header spans sub-columns (e.g. "Enroll In" over "Dental" and
  "Vision"), list them in "sub_columns".

List any OCR field that is employer/office-use or company-header text in
"false_positives".  Boxes for non-table fields are fractions (0.0-1.0) of
the page width and height.
"""

SYSTEM_PROMPT_NO_TABLES = _COMMON_RULES + """
No tables were located by OCR on this page, so report table cells yourself:
- Return a field for EVERY cell of EVERY empty table row.
- Name cells "<Column Header> (Row N)", e.g. "First Name (Row 2)".
- Include checkbox columns, e.g. "Enroll In: Dental (Row 1)".
- Do not report the column headers themselves.

List any OCR field that is employer/office-use text in "false_positives".
All boxes are fractions (0.0-1.0) of the page width and height.
"""

_FIELD_SCHEMA = """    {
      "field_name": "descriptive name",
      "field_type": "TEXT|NUMBER|DATE|CHECKBOX|SIGNATURE",
      "bounding_box": {"left": 0.0, "top": 0.0, "width": 0.0, "height": 0.0},
      "required": false,
      "is_fillable": true,
      "section": "section name or null"
    }"""

_TABLE_SCHEMA = """    {
      "header_texts": ["First Name", "Last Name", "DOB"],
      "actual_data_row_count": 5,
      "column_types": ["TEXT", "TEXT", "DATE"],
      "sub_columns": [{"parent_header": "Enroll In", "sub_headers": ["Dental", "Vision"]}]
    }"""


def _format_box(bbox: Optional[BoundingBox]) -> str:
    if bbox is None:
        return "left=?, top=?, w=?, h=?"
    return "left=%.3f, top=%.3f, w=%.3f, h=%.3f" % (bbox.left, bbox.top, bbox.width, bbox.height)


def summarize_fields(fields: Sequence[FormField]) -> str:
    if not fields:
        return "(none detected)"
    return "\n".join(
        '- "%s" (%s, page %d, bbox: %s)' % (f.field_name, f.field_type.value, f.page, _format_box(f.bounding_box))
        for f in fields
    )


def summarize_tables(tables: Sequence[TableStructure]) -> str:
    return "\n".join(
        "- Table with headers: [%s], OCR detected %d data rows"
        % (", ".join(t.header_texts), t.detected_row_count)
        for t in tables
    )


def build_user_prompt(page_number: int, existing_fields: Sequence[FormField],
                      table_structures: Sequence[TableStructure]) -> str:
    """The per-page instruction, listing what OCR already found."""
    lines = [
        "Analyze this form page (page %d) and identify ALL fillable fields." % page_number,
        "",
        "OCR already detected these fields on this page:",
        summarize_fields(existing_fields),
        "",
    ]

    if table_structures:
        lines += [
            "OCR detected these tables on this page:",
            summarize_tables(table_structures),
            "",
            "1. Outside tables, report only the fillable fields OCR MISSED, with boxes.",
            "2. For each table report the total fillable row count, the column types and any",
            "   sub-column splits. No boxes for table cells.",
            "3. List OCR fields that are not actually fillable in false_positives.",
            "",
            "Return ONLY this JSON structure:",
            "{",
            '  "fields": [',
            _FIELD_SCHEMA,
            "  ],",
            '  "tables": [',
            _TABLE_SCHEMA,
            "  ],",
            '  "false_positives": ["OCR field name that is NOT fillable"]',
            "}",
        ]
    else:
        lines += [
            "1. Report every fillable field OCR MISSED, especially each cell of each empty",
            "   table row, checkbox columns and signature lines.",
            "2. List OCR fields that are not actually fillable in false_positives.",
            "3. Boxes are 0-1 fractions of the page width and height.",
            "",
            "Return ONLY this JSON structure:",
            "{",
            '  "fields": [',
            _FIELD_SCHEMA,
            "  ],",
            '  "false_positives": ["OCR field name that is NOT fillable"]',
            "}",
        ]
    return "\n".join(lines)


# ============================================================================
# Reply parsing
# ============================================================================

def _as_str(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _as_bool(value: Any, default: bool) -> bool:
    if value is None:
        return default
    if isinstance(value, str):
        return value.strip().lower() in ("true", "yes", "1")
    return bool(value)


def _as_int(value: Any) -> int:
    try:
        return max(0, int(value))
    except (TypeError, ValueError, OverflowError):
        return 0


def _list(value: Any) -> List:
    return value if isinstance(value, list) else []


def _str_list(value: Any) -> List[str]:
    if not isinstance(value, list):
        return []
    return [s for s in (_as_str(v) for v in value) if s]


def _vision_field(raw: Dict, page: int) -> VisionField:
    section = _as_str(raw.get("section"))
    if section is not None and section.lower() == "null":
        section = None
    return VisionField(
        name=_as_str(raw.get("field_name")) or "Unknown",
        field_type=(_as_str(raw.get("field_type")) or "TEXT").upper(),
        bounding_box=BoundingBox.from_dict(raw.get("bounding_box"), page=page),
        required=_as_bool(raw.get("required"), False),
        is_fillable=_as_bool(raw.get("is_fillable"), True),
        section=section,
        page=page,
    )


def _vision_table(raw: Dict) -> VisionTableInfo:
    sub_columns = []
    for sc in _list(raw.get("sub_columns")):
        if not isinstance(sc, dict):
            continue
        sub_columns.append(VisionSubColumn(
            parent_header=_as_str(sc.get("parent_header")) or "",
            sub_headers=_str_list(sc.get("sub_headers")),
        ))
    return VisionTableInfo(
        header_texts=_str_list(raw.get("header_texts")),
        actual_data_row_count=_as_int(raw.get("actual_data_row_count")),
        column_types=[t.upper() for t in _str_list(raw.get("column_types"))],
        sub_columns=sub_columns,
    )


def to_page_result(data: Dict, page: int) -> VisionPageResult:
    """Coerce a decoded reply object into a ``VisionPageResult``."""
    fields = [_vision_field(f, page) for f in _list(data.get("fields")) if isinstance(f, dict)]
    tables = [_vision_table(t) for t in _list(data.get("tables")) if isinstance(t, dict)]
    false_positives = _str_list(data.get("false_positives"))

    logger.debug("Page %d parsed: %d vision fields, %d tables, %d false positives",
                 page, len(fields), len(tables), len(false_positives))
    return VisionPageResult(fields=fields, tables=tables, false_positives=false_positives)


def _loads_object(text: str) -> Optional[Dict]:
    try:
        data = json.loads(text)
    except json.JSONDecodeError:
        return None
    return data if isinstance(data, dict) else None


def parse_vision_response(text: str, page: int, truncated: bool = False) -> VisionPageResult:
    """
    Parse the model's reply text for one page.

    A truncated reply goes straight to structural repair.  A complete reply
    that still fails to parse gets one repair attempt too.  Anything that
    cannot be salvaged yields a degraded result.
    """
    raw = extract_json_object(text)
    if raw is None:
        logger.warning("Page %d: no JSON object in vision reply: %.200s", page, text)
        return VisionPageResult.degraded("no JSON object in reply")

    if truncated:
        repaired = repair_truncated_json(raw)
        if repaired is None:
            logger.warning("Page %d: truncated vision reply could not be repaired", page)
            return VisionPageResult.degraded("truncated reply not repairable")
        data = _loads_object(repaired)
        if data is None:
            logger.warning("Page %d: repaired vision reply still invalid", page)
            return VisionPageResult.degraded("truncated reply not repairable")
        return to_page_result(data, page)

    data = _loads_object(raw)
    if data is None:
        logger.warning("Page %d: vision reply did not parse, attempting repair", page)
        repaired = repair_truncated_json(raw)
        data = _loads_object(repaired) if repaired is not None else None
        if data is None:
            logger.warning("Page %d: unparseable vision reply: %.200s", page, text)
            return VisionPageResult.degraded("unparseable reply")
    return to_page_result(data, page)


# ============================================================================
# Analyzer
# ============================================================================

class VisionPageAnalyzer:
    """
    Runs the vision pass for single pages.

    ``client`` is anything with ``send(system_prompt, user_prompt, image_b64)``
    returning an object with ``text`` and ``truncated`` (see
    ``formfields.models.claude_vision.ClaudeVisionClient``).
    """

    def __init__(self, client, config: PipelineConfig = CONFIG):
        self.client = client
        self.config = config

    def analyze_page(self, image_b64: str, page_number: int,
                     existing_fields: Sequence[FormField] = (),
                     table_structures: Sequence[TableStructure] = ()) -> VisionPageResult:
        """
        Analyze one rendered page.

        Args:
            image_b64: Base64 JPEG of the page
            page_number: 1-based page number
            existing_fields: OCR candidates on this page
            table_structures: OCR tables on this page

        Returns:
            ``VisionPageResult``; degraded on any provider or parse failure
        """
        system_prompt = SYSTEM_PROMPT_WITH_TABLES if table_structures else SYSTEM_PROMPT_NO_TABLES
        user_prompt = build_user_prompt(page_number, existing_fields, table_structures)

        logger.info("Page %d: vision analysis (%d OCR fields, %d tables)",
                    page_number, len(existing_fields), len(table_structures))
        try:
            reply = self.client.send(system_prompt, user_prompt, image_b64)
        except VisionProviderError as e:
            logger.error("Page %d: vision provider failed: %s", page_number, e)
            return VisionPageResult.degraded("provider error: %s" % e)

        if not reply.text or not reply.text.strip():
            logger.warning("Page %d: vision reply had no text", page_number)
            return VisionPageResult.degraded("empty reply")

        if reply.truncated:
            logger.warning("Page %d: vision reply truncated at the token limit, repairing", page_number)

        try:
            return parse_vision_response(reply.text, page_number, reply.truncated)
        except (ValueError, TypeError) as e:
            logger.error("Page %d: malformed vision reply: %s", page_number, e)
            return VisionPageResult.degraded("malformed reply: %s" % e)
