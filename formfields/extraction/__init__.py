"""
Extraction package: OCR block parsing, vision page analysis, table field
generation and field reconciliation.
"""

from .blocks import BlockGraph
from .field_types import FIELD_TYPE_RULES, classify_label
from .json_repair import extract_json_object, repair_truncated_json
from .merger import (
    TABLE_FIELD_PATTERN,
    fix_field_type,
    map_vision_field_type,
    merge_all_pages,
    merge_page,
)
from .ocr_parser import OcrParseResult, deduplicate_fields, parse_ocr_blocks
from .static_labels import create_static_label_fields
from .table_generator import (
    generate_page_table_fields,
    generate_table_fields,
    match_vision_table,
)
from .tables import extract_table
from .vision import VisionPageAnalyzer, parse_vision_response

__all__ = [
    # Blocks
    'BlockGraph',
    # Field types
    'FIELD_TYPE_RULES',
    'classify_label',
    # OCR parser
    'OcrParseResult',
    'parse_ocr_blocks',
    'deduplicate_fields',
    'extract_table',
    # Vision
    'VisionPageAnalyzer',
    'parse_vision_response',
    'extract_json_object',
    'repair_truncated_json',
    # Tables
    'generate_table_fields',
    'generate_page_table_fields',
    'match_vision_table',
    # Merger
    'TABLE_FIELD_PATTERN',
    'merge_page',
    'merge_all_pages',
    'fix_field_type',
    'map_vision_field_type',
    # Static labels
    'create_static_label_fields',
]
