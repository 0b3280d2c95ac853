"""
Centralized configuration for cross-cutting extraction thresholds.

Thresholds that are referenced by multiple modules or that critically
control which fields survive are collected here.  Module-specific
constants (keyword rules, prompt text) remain in their own files.
"""

from dataclasses import dataclass
from typing import Tuple


@dataclass(frozen=True)
class PipelineConfig:
    """Key thresholds controlling extraction and reconciliation.

    Frozen dataclass; treat as read-only at runtime.  To experiment with
    different values, create a new instance and pass it through.
    """

    # ------------------------------------------------------------------
    # OCR block parser
    # ------------------------------------------------------------------
    # Provider confidence is on a 0-100 scale.  Key/value pairs and
    # checkboxes below this are dropped without further notice.
    min_field_confidence: float = 50.0
    # Boxes thinner than this (fractions of the page) are OCR speckle.
    min_box_width: float = 0.01
    min_box_height: float = 0.005
    # A "value" longer than this is a paragraph, not a filled-in field.
    max_value_length: int = 80
    # Two candidates on the same page overlapping more than this are
    # duplicates; the lower-confidence one goes.
    dedup_iou_threshold: float = 0.5

    # Orphan checkbox labelling.  The vertical band is expressed as a
    # multiple of the checkbox height around its vertical centre.
    orphan_band_ratio: float = 1.0
    orphan_max_gap: float = 0.25          # Max horizontal gap to a left/right label
    orphan_max_above_gap: float = 0.03    # Max vertical gap to a label line above

    # Header lines that start pre-printed legal text.  Everything on the
    # page at or below the first one is not patient-fillable.
    legal_notice_headers: Tuple[str, ...] = (
        "notice of privacy practices",
        "privacy notice",
        "hipaa notice",
        "legal notice",
        "fraud warning",
        "terms and conditions",
        "acknowledgment of receipt",
    )
    min_static_text_length: int = 3

    # ------------------------------------------------------------------
    # Field reconciliation merger
    # ------------------------------------------------------------------
    iou_match_threshold: float = 0.3
    name_similarity_threshold: float = 0.6
    vision_field_confidence: float = 0.80

    # ------------------------------------------------------------------
    # Table field generator
    # ------------------------------------------------------------------
    table_ocr_row_confidence: float = 0.95
    table_extrapolated_row_confidence: float = 0.85
    default_column_width: float = 0.1
    # Upper bound on the vision row count; never lowers what OCR saw.
    max_table_rows: int = 100

    # ------------------------------------------------------------------
    # Static labels
    # ------------------------------------------------------------------
    include_static_labels: bool = True
    static_label_overlap_iou: float = 0.3

    # ------------------------------------------------------------------
    # Vision provider
    # ------------------------------------------------------------------
    vision_enabled: bool = True
    vision_model: str = "claude-haiku-4-5-20251001"
    vision_api_url: str = "https://api.anthropic.com/v1/messages"
    vision_api_version: str = "2023-06-01"
    vision_max_tokens: int = 8192
    vision_connect_timeout: float = 30.0
    # Multi-modal calls are slower than OCR; keep this above textract_read_timeout.
    vision_read_timeout: float = 120.0
    # Each in-flight worker holds one rendered page in memory.
    vision_max_workers: int = 3
    render_scale: float = 2.0
    render_jpeg_quality: int = 85

    # ------------------------------------------------------------------
    # OCR provider
    # ------------------------------------------------------------------
    textract_read_timeout: float = 60.0
    textract_poll_interval: float = 5.0
    textract_max_wait: float = 600.0


# Singleton used by all modules.  Import this, not PipelineConfig.
CONFIG = PipelineConfig()
