import logging
import threading
from concurrent.futures import FIRST_COMPLETED, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence

from formfields.config import CONFIG, PipelineConfig
from formfields.errors import FormExtractionError, OcrProviderError
from formfields.extraction import (
    OcrParseResult,
    create_static_label_fields,
    deduplicate_fields,
    generate_page_table_fields,
    merge_all_pages,
    parse_ocr_blocks,
)
from formfields.fields import FormField, TableStructure, VisionPageResult

logger = logging.getLogger(__name__)

READY = "READY"
ERROR = "ERROR"
NEEDS_REANALYSIS = "NEEDS_REANALYSIS"

# How often the coordinator checks the cancel flag while pages are in flight
_CANCEL_POLL_SECONDS = 0.2


@dataclass(frozen=True)
class AnalysisResult:
    status: str
    fields: List[FormField] = field(default_factory=list)
    error: Optional[str] = None
    page_results: Dict[int, VisionPageResult] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return self.status == READY


class AnalysisCancelled(FormExtractionError):
    """The owning upload was cancelled mid-analysis."""


class DocumentAnalyzer:
    """
    End-to-end field extraction for one document.

    OCR (fatal on failure) -> block parsing -> per-page vision analysis on a
    bounded thread pool (non-fatal per page) -> table field generation ->
    single-threaded merge -> static labels.
    """

    def __init__(self, ocr_client=None, vision_analyzer=None, renderer=None,
                 config: PipelineConfig = CONFIG):
        self.ocr_client = ocr_client
        self.vision_analyzer = vision_analyzer
        self.renderer = renderer
        self.config = config

    @property
    def vision_active(self) -> bool:
        return bool(self.config.vision_enabled and self.vision_analyzer is not None
                    and self.renderer is not None)

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    def analyze(self, path: str, form_id: str, blocks: Optional[Sequence[Dict]] = None,
                cancel_event: Optional[threading.Event] = None) -> AnalysisResult:
        """
        Analyze a document.

        Args:
            path: Source PDF or image (rendered for the vision pass)
            form_id: Id stamped on every produced field
            blocks: Pre-fetched OCR blocks; when None the OCR client is called
            cancel_event: Set by the caller to abandon the analysis

        Returns:
            ``AnalysisResult`` with status READY, ERROR (OCR failure) or
            NEEDS_REANALYSIS (cancelled)
        """
        logger.info("Analyzing %s (form %s)", path, form_id)

        if blocks is None:
            try:
                blocks = self._run_ocr(path)
            except (OcrProviderError, OSError, ValueError) as e:
                logger.error("OCR failed for %s: %s", path, e)
                return AnalysisResult(status=ERROR, error=str(e))

        parsed = parse_ocr_blocks(blocks, form_id, self.config)

        try:
            page_results = self._run_vision(path, parsed, cancel_event)
        except AnalysisCancelled:
            logger.warning("Analysis of %s cancelled; marked for re-analysis", path)
            return AnalysisResult(status=NEEDS_REANALYSIS, error="cancelled")

        fields = self._reconcile(parsed, page_results, form_id)
        logger.info("Analysis of %s complete: %d fields", path, len(fields))
        return AnalysisResult(status=READY, fields=fields, page_results=page_results)

    # ------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------

    def _run_ocr(self, path: str) -> List[Dict]:
        if self.ocr_client is None:
            raise OcrProviderError("No OCR client configured and no blocks supplied")
        with open(path, "rb") as f:
            document_bytes = f.read()
        return self.ocr_client.analyze_document(document_bytes=document_bytes)

    def _analyze_one_page(self, path: str, page: int, page_fields: List[FormField],
                          page_tables: List[TableStructure],
                          cancel_event: Optional[threading.Event]) -> VisionPageResult:
        if cancel_event is not None and cancel_event.is_set():
            return VisionPageResult.degraded("cancelled")

        try:
            image_b64 = self.renderer.render_page_to_base64(path, page - 1)
        except (FormExtractionError, OSError, ValueError) as e:
            logger.error("Page %d: render failed: %s", page, e)
            image_b64 = None
        if image_b64 is None:
            logger.warning("Page %d: render failed, keeping OCR-only fields", page)
            return VisionPageResult.degraded("render failed")

        try:
            return self.vision_analyzer.analyze_page(image_b64, page, page_fields, page_tables)
        except (FormExtractionError, ValueError, TypeError, OSError) as e:
            logger.error("Page %d: vision analysis failed: %s", page, e)
            return VisionPageResult.degraded(str(e))

    def _run_vision(self, path: str, parsed: OcrParseResult,
                    cancel_event: Optional[threading.Event]) -> Dict[int, VisionPageResult]:
        """Vision-analyze every page on a bounded pool; results keyed by 1-based page."""
        if not self.vision_active:
            logger.info("Vision pass disabled; using OCR fields only")
            return {}

        page_count = self.renderer.page_count(path)
        if page_count <= 0:
            logger.warning("No renderable pages in %s; skipping vision pass", path)
            return {}

        fields_by_page: Dict[int, List[FormField]] = {}
        for f in parsed.fields:
            fields_by_page.setdefault(f.page, []).append(f)
        tables_by_page: Dict[int, List[TableStructure]] = {}
        for t in parsed.tables:
            tables_by_page.setdefault(t.page, []).append(t)

        results: Dict[int, VisionPageResult] = {}
        executor = ThreadPoolExecutor(max_workers=max(1, self.config.vision_max_workers),
                                      thread_name_prefix="vision")
        try:
            futures = {
                executor.submit(
                    self._analyze_one_page, path, page,
                    fields_by_page.get(page, []), tables_by_page.get(page, []), cancel_event,
                ): page
                for page in range(1, page_count + 1)
            }
            pending = set(futures)
            while pending:
                if cancel_event is not None and cancel_event.is_set():
                    raise AnalysisCancelled()
                done, pending = wait(pending, timeout=_CANCEL_POLL_SECONDS, return_when=FIRST_COMPLETED)
                for future in done:
                    results[futures[future]] = future.result()
            if cancel_event is not None and cancel_event.is_set():
                raise AnalysisCancelled()
        finally:
            executor.shutdown(wait=False, cancel_futures=True)

        degraded = sorted(p for p, r in results.items() if r.is_degraded)
        if degraded:
            logger.warning("Vision degraded on pages %s; those pages keep OCR-only fields", degraded)
        return results

    def _reconcile(self, parsed: OcrParseResult, page_results: Dict[int, VisionPageResult],
                   form_id: str) -> List[FormField]:
        tables_by_page: Dict[int, List[TableStructure]] = {}
        for t in parsed.tables:
            tables_by_page.setdefault(t.page, []).append(t)

        table_fields: List[FormField] = []
        for page in sorted(tables_by_page):
            table_fields.extend(generate_page_table_fields(
                tables_by_page[page], page_results.get(page), form_id, page, self.config,
            ))

        fields = merge_all_pages(
            parsed.fields, page_results, form_id,
            table_generated_fields=table_fields,
            table_pages=set(tables_by_page),
            table_cell_ids=parsed.table_cell_ids,
            config=self.config,
        )

        # Merged and generated fields can still land on the same box
        kept_ids = {f.id for f in deduplicate_fields(fields, self.config.dedup_iou_threshold)}
        if len(kept_ids) < len(fields):
            logger.info("Final dedup removed %d overlapping fields", len(fields) - len(kept_ids))
            fields = [f for f in fields if f.id in kept_ids]

        if self.config.include_static_labels:
            fields = fields + create_static_label_fields(parsed.static_text, fields, form_id, self.config)
        return fields
