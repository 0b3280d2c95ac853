"""
Tests for the OCR provider client and the end-to-end document analyzer.

Both providers are replaced with in-process fakes; the block graphs come
from ``textract_fixtures.BlockBuilder``.
Run with: pytest tests/test_processing_pipeline.py -v
"""

import json
import re
import threading

import pytest
from botocore.exceptions import ClientError

from formfields.config import PipelineConfig
from formfields.errors import OcrProviderError, VisionProviderError
from formfields.extraction.vision import VisionPageAnalyzer
from formfields.fields import FieldType
from formfields.models.claude_vision import VisionReply
from formfields.models.textract import (
    FAILED, IN_PROGRESS, SUBMITTED, SUCCEEDED, TextractClient, load_blocks_from_json,
)
from formfields.processing_pipeline import ERROR, NEEDS_REANALYSIS, READY, DocumentAnalyzer
from formfields.utils.bbox import same_page_iou
from textract_fixtures import UNCHECKED

FORM_ID = "form-1"


# ============================================================================
# Fakes
# ============================================================================

class FakeTextract:
    """Stands in for the boto3 Textract client."""

    def __init__(self, responses=(), blocks=None, error=None):
        self.responses = list(responses)
        self.blocks = blocks or []
        self.error = error
        self.calls = []

    def get_document_analysis(self, **kwargs):
        self.calls.append(("get", kwargs))
        item = self.responses.pop(0)
        if isinstance(item, Exception):
            raise item
        return item

    def start_document_analysis(self, **kwargs):
        self.calls.append(("start", kwargs))
        return {"JobId": "job-1"}

    def analyze_document(self, **kwargs):
        self.calls.append(("analyze", kwargs))
        if self.error is not None:
            raise self.error
        return {"Blocks": self.blocks}


class FakeRenderer:
    def __init__(self, pages=1, fail_pages=()):
        self.pages = pages
        self.fail_pages = set(fail_pages)

    def page_count(self, path):
        return self.pages

    def render_page_to_base64(self, path, page_index):
        if page_index + 1 in self.fail_pages:
            return None
        return "aW1n"


class PageVisionClient:
    """Vision provider fake answering per page (read from the user prompt)."""

    def __init__(self, replies):
        self.replies = replies
        self.lock = threading.Lock()
        self.pages_seen = []

    def send(self, system_prompt, user_prompt, image_b64):
        page = int(re.search(r'\(page (\d+)\)', user_prompt).group(1))
        with self.lock:
            self.pages_seen.append(page)
        reply = self.replies.get(page, {"fields": []})
        if isinstance(reply, Exception):
            raise reply
        return VisionReply(json.dumps(reply), "end_turn")


def _client_error(code):
    return ClientError({"Error": {"Code": code, "Message": "x"}}, "GetDocumentAnalysis")


def _analyzer(replies=None, pages=1, fail_pages=(), config=None, ocr_client=None):
    config = config or PipelineConfig()
    vision = PageVisionClient(replies or {})
    return DocumentAnalyzer(
        ocr_client=ocr_client,
        vision_analyzer=VisionPageAnalyzer(vision, config),
        renderer=FakeRenderer(pages, fail_pages),
        config=config,
    ), vision


def _box(left, top, width, height):
    return {"left": left, "top": top, "width": width, "height": height}


def _assert_no_overlaps(fields, threshold=0.5):
    boxed = [f for f in fields if f.bounding_box is not None]
    overlapping = [
        (a.field_name, b.field_name)
        for i, a in enumerate(boxed) for b in boxed[i + 1:]
        if same_page_iou(a.bounding_box, b.bounding_box) >= threshold
    ]
    assert overlapping == []


# ============================================================================
# Textract client
# ============================================================================

class TestTextractJobs:
    def test_start_returns_submitted(self):
        fake = FakeTextract()
        job = TextractClient(client=fake).start_document_analysis("bucket", "forms/a.pdf")
        assert job.status == SUBMITTED
        assert job.job_id == "job-1"
        assert not job.is_terminal
        _, kwargs = fake.calls[0]
        assert kwargs["DocumentLocation"] == {"S3Object": {"Bucket": "bucket", "Name": "forms/a.pdf"}}
        assert kwargs["FeatureTypes"] == ["FORMS", "TABLES"]

    def test_in_progress(self):
        fake = FakeTextract([{"JobStatus": "IN_PROGRESS"}])
        job = TextractClient(client=fake).get_document_analysis("job-1")
        assert job.status == IN_PROGRESS
        assert not job.is_terminal

    def test_succeeded_follows_next_token(self):
        fake = FakeTextract([
            {"JobStatus": "SUCCEEDED", "Blocks": [{"Id": "a"}], "NextToken": "t1"},
            {"JobStatus": "SUCCEEDED", "Blocks": [{"Id": "b"}]},
        ])
        job = TextractClient(client=fake).get_document_analysis("job-1")
        assert job.status == SUCCEEDED
        assert [b["Id"] for b in job.blocks] == ["a", "b"]
        assert fake.calls[1][1] == {"JobId": "job-1", "NextToken": "t1"}

    def test_partial_success_counts_as_succeeded(self):
        fake = FakeTextract([{"JobStatus": "PARTIAL_SUCCESS", "Blocks": [{"Id": "a"}],
                              "StatusMessage": "page 3 unreadable"}])
        job = TextractClient(client=fake).get_document_analysis("job-1")
        assert job.status == SUCCEEDED
        assert len(job.blocks) == 1

    def test_failed(self):
        fake = FakeTextract([{"JobStatus": "FAILED", "StatusMessage": "bad document"}])
        job = TextractClient(client=fake).get_document_analysis("job-1")
        assert job.status == FAILED
        assert job.message == "bad document"
        assert job.is_terminal

    def test_unknown_status_is_failed(self):
        fake = FakeTextract([{"JobStatus": "EXPLODED"}])
        assert TextractClient(client=fake).get_document_analysis("job-1").status == FAILED

    def test_expired_job_id_is_failed(self):
        fake = FakeTextract([_client_error("InvalidJobIdException")])
        job = TextractClient(client=fake).get_document_analysis("job-old")
        assert job.status == FAILED
        assert "expired" in job.message

    def test_other_client_errors_raise(self):
        fake = FakeTextract([_client_error("AccessDeniedException")])
        with pytest.raises(OcrProviderError):
            TextractClient(client=fake).get_document_analysis("job-1")


class TestWaitForJob:
    def test_polls_until_done(self):
        fake = FakeTextract([
            {"JobStatus": "IN_PROGRESS"},
            {"JobStatus": "IN_PROGRESS"},
            {"JobStatus": "SUCCEEDED", "Blocks": [{"Id": "a"}]},
        ])
        sleeps = []
        blocks = TextractClient(client=fake).wait_for_job("job-1", sleep=sleeps.append)
        assert blocks == [{"Id": "a"}]
        assert sleeps == [5.0, 5.0]

    def test_failure_raises(self):
        fake = FakeTextract([{"JobStatus": "FAILED", "StatusMessage": "bad"}])
        with pytest.raises(OcrProviderError):
            TextractClient(client=fake).wait_for_job("job-1", sleep=lambda s: None)

    def test_timeout(self):
        fake = FakeTextract([{"JobStatus": "IN_PROGRESS"}] * 3)
        with pytest.raises(OcrProviderError):
            TextractClient(client=fake).wait_for_job("job-1", poll_interval=1.0, max_wait=2.0,
                                                     sleep=lambda s: None)
        assert len(fake.calls) == 3


class TestAnalyzeDocument:
    def test_bytes(self):
        fake = FakeTextract(blocks=[{"Id": "a"}])
        assert TextractClient(client=fake).analyze_document(document_bytes=b"%PDF") == [{"Id": "a"}]
        _, kwargs = fake.calls[0]
        assert kwargs["Document"] == {"Bytes": b"%PDF"}

    def test_s3_object(self):
        fake = FakeTextract()
        TextractClient(client=fake).analyze_document(bucket="b", key="k.png")
        assert fake.calls[0][1]["Document"] == {"S3Object": {"Bucket": "b", "Name": "k.png"}}

    def test_needs_a_document(self):
        with pytest.raises(ValueError):
            TextractClient(client=FakeTextract()).analyze_document()

    def test_provider_error(self):
        fake = FakeTextract(error=_client_error("ThrottlingException"))
        with pytest.raises(OcrProviderError):
            TextractClient(client=fake).analyze_document(document_bytes=b"x")


class TestLoadBlocks:
    def test_response_object(self, tmp_path):
        path = tmp_path / "response.json"
        path.write_text(json.dumps({"Blocks": [{"Id": "a"}], "DocumentMetadata": {"Pages": 1}}))
        assert load_blocks_from_json(str(path)) == [{"Id": "a"}]

    def test_bare_list(self, tmp_path):
        path = tmp_path / "blocks.json"
        path.write_text(json.dumps([{"Id": "a"}]))
        assert load_blocks_from_json(str(path)) == [{"Id": "a"}]

    def test_invalid(self, tmp_path):
        path = tmp_path / "other.json"
        path.write_text(json.dumps({"pages": []}))
        with pytest.raises(ValueError):
            load_blocks_from_json(str(path))


# ============================================================================
# Document analyzer
# ============================================================================

class TestDocumentAnalyzer:
    def test_ocr_failure_is_error(self, tmp_path):
        path = tmp_path / "form.pdf"
        path.write_bytes(b"%PDF")
        ocr = TextractClient(client=FakeTextract(error=_client_error("ThrottlingException")))
        analyzer, _ = _analyzer(ocr_client=ocr)
        result = analyzer.analyze(str(path), FORM_ID)
        assert result.status == ERROR
        assert not result.ok
        assert result.fields == []
        assert result.error

    def test_missing_document_is_error(self, tmp_path):
        ocr = TextractClient(client=FakeTextract())
        analyzer, _ = _analyzer(ocr_client=ocr)
        assert analyzer.analyze(str(tmp_path / "missing.pdf"), FORM_ID).status == ERROR

    def test_ocr_client_used_when_no_blocks(self, tmp_path, builder):
        builder.key_value("Patient Name", (0.1, 0.1, 0.15, 0.02), value_box=(0.3, 0.1, 0.3, 0.02))
        path = tmp_path / "form.png"
        path.write_bytes(b"png")
        fake = FakeTextract(blocks=builder.blocks)
        analyzer, _ = _analyzer(ocr_client=TextractClient(client=fake))
        result = analyzer.analyze(str(path), FORM_ID)
        assert result.status == READY
        assert fake.calls[0][1]["Document"] == {"Bytes": b"png"}
        assert [f.field_name for f in result.fields] == ["Patient Name"]

    def test_cancelled_needs_reanalysis(self, builder):
        builder.key_value("Patient Name", (0.1, 0.1, 0.15, 0.02))
        analyzer, _ = _analyzer(pages=3)
        cancel = threading.Event()
        cancel.set()
        result = analyzer.analyze("form.pdf", FORM_ID, blocks=builder.blocks, cancel_event=cancel)
        assert result.status == NEEDS_REANALYSIS
        assert result.fields == []

    def test_vision_disabled(self, builder):
        builder.key_value("Patient Name", (0.1, 0.1, 0.15, 0.02))
        analyzer, vision = _analyzer(config=PipelineConfig(vision_enabled=False))
        result = analyzer.analyze("form.pdf", FORM_ID, blocks=builder.blocks)
        assert result.status == READY
        assert vision.pages_seen == []
        assert result.page_results == {}
        assert len(result.fields) == 1

    def test_every_page_analyzed(self, builder):
        analyzer, vision = _analyzer(pages=4, config=PipelineConfig(vision_max_workers=2))
        result = analyzer.analyze("form.pdf", FORM_ID, blocks=builder.blocks)
        assert sorted(vision.pages_seen) == [1, 2, 3, 4]
        assert sorted(result.page_results) == [1, 2, 3, 4]

    def test_static_labels_appended(self, builder):
        builder.key_value("Patient Name", (0.1, 0.1, 0.15, 0.02), value_box=(0.3, 0.1, 0.3, 0.02))
        builder.line("Patient Name", (0.1, 0.1, 0.15, 0.02))
        builder.line("Please print clearly in ink", (0.1, 0.03, 0.4, 0.02))
        analyzer, _ = _analyzer()
        result = analyzer.analyze("form.pdf", FORM_ID, blocks=builder.blocks)
        statics = [f for f in result.fields if f.field_type == FieldType.STATIC_LABEL]
        assert [f.field_name for f in statics] == ["Please print clearly in ink"]
        assert result.fields[-1].field_type == FieldType.STATIC_LABEL

        no_statics, _ = _analyzer(config=PipelineConfig(include_static_labels=False))
        result = no_statics.analyze("form.pdf", FORM_ID, blocks=builder.blocks)
        assert all(f.field_type != FieldType.STATIC_LABEL for f in result.fields)


# ============================================================================
# End-to-end scenarios
# ============================================================================

class TestScenarios:
    def test_ocr_field_without_vision_counterpart(self, builder):
        builder.key_value("Patient Name", (0.1, 0.1, 0.15, 0.02), value_box=(0.3, 0.1, 0.3, 0.02))
        analyzer, _ = _analyzer({1: {"fields": []}})
        result = analyzer.analyze("form.pdf", FORM_ID, blocks=builder.blocks)

        assert len(result.fields) == 1
        field = result.fields[0]
        assert field.field_name == "Patient Name"
        assert field.field_type == FieldType.TEXT
        assert not field.value
        assert not field.required

    def test_ocr_and_vision_agree(self, builder):
        builder.key_value("Patient Name", (0.1, 0.1, 0.15, 0.02), value_box=(0.3, 0.1, 0.3, 0.02))
        replies = {1: {"fields": [{"field_name": "Patient Name", "field_type": "TEXT",
                                   "bounding_box": _box(0.3, 0.1, 0.3, 0.02), "required": True}]}}
        analyzer, _ = _analyzer(replies)
        result = analyzer.analyze("form.pdf", FORM_ID, blocks=builder.blocks)

        assert len(result.fields) == 1
        field = result.fields[0]
        assert field.required
        assert field.confidence == pytest.approx(92.0)
        assert (field.bounding_box.left, field.bounding_box.width) == (0.3, 0.3)
        assert field.form_id == FORM_ID

    def test_table_extended_by_vision(self, builder):
        builder.table([["First Name", "Last Name", "DOB"], ["", "", ""], ["", "", ""]])
        replies = {1: {"fields": [], "tables": [{"header_texts": ["First Name", "Last Name", "DOB"],
                                                 "actual_data_row_count": 4}]}}
        analyzer, _ = _analyzer(replies)
        result = analyzer.analyze("form.pdf", FORM_ID, blocks=builder.blocks)

        assert len(result.fields) == 12
        by_name = {f.field_name: f for f in result.fields}
        assert by_name["DOB (Row 4)"].field_type == FieldType.DATE
        assert by_name["First Name (Row 1)"].confidence == pytest.approx(0.95)
        assert by_name["First Name (Row 3)"].confidence == pytest.approx(0.85)
        assert by_name["First Name (Row 4)"].bounding_box.top == pytest.approx(0.46 + 2 * 0.03)

    def test_table_without_vision(self, builder):
        builder.table([["First Name", "Last Name", "DOB"], ["", "", ""], ["", "", ""]])
        analyzer, _ = _analyzer(config=PipelineConfig(vision_enabled=False))
        result = analyzer.analyze("form.pdf", FORM_ID, blocks=builder.blocks)
        assert len(result.fields) == 6
        assert all(f.confidence == pytest.approx(0.95) for f in result.fields)
        assert [f.field_type for f in result.fields[:3]] == [FieldType.TEXT, FieldType.TEXT, FieldType.DATE]

    def test_vision_only_signature(self, builder):
        builder.key_value("Home Address", (0.1, 0.1, 0.15, 0.02), value_box=(0.3, 0.1, 0.4, 0.02))
        replies = {1: {"fields": [{"field_name": "Signature", "field_type": "SIGNATURE",
                                   "bounding_box": _box(0.1, 0.8, 0.4, 0.03), "required": True}]}}
        analyzer, _ = _analyzer(replies)
        result = analyzer.analyze("form.pdf", FORM_ID, blocks=builder.blocks)

        assert len(result.fields) == 2
        signature = [f for f in result.fields if f.field_type == FieldType.SIGNATURE][0]
        assert signature.confidence == pytest.approx(0.80)
        assert signature.bounding_box.top == pytest.approx(0.8)

    def test_degraded_page_keeps_ocr_fields(self, builder):
        builder.key_value("Patient Name", (0.1, 0.1, 0.15, 0.02), page=1)
        builder.key_value("Employer Group Number", (0.1, 0.1, 0.3, 0.02), page=2)
        replies = {
            1: VisionProviderError("HTTP 529", status_code=529),
            2: {"fields": [], "false_positives": ["Employer Group Number"]},
        }
        analyzer, _ = _analyzer(replies, pages=2)
        result = analyzer.analyze("form.pdf", FORM_ID, blocks=builder.blocks)

        assert result.status == READY
        assert result.page_results[1].is_degraded
        assert [f.field_name for f in result.fields] == ["Patient Name"]

    def test_render_failure_degrades_page(self, builder):
        builder.key_value("Employer Group Number", (0.1, 0.1, 0.3, 0.02))
        replies = {1: {"fields": [], "false_positives": ["Employer Group Number"]}}
        analyzer, vision = _analyzer(replies, fail_pages={1})
        result = analyzer.analyze("form.pdf", FORM_ID, blocks=builder.blocks)
        assert vision.pages_seen == []
        assert result.page_results[1].reason == "render failed"
        assert [f.field_name for f in result.fields] == ["Employer Group Number"]

    def test_false_positive_removed(self, builder):
        builder.key_value("Patient Name", (0.1, 0.1, 0.15, 0.02))
        builder.key_value("Employer Group Number", (0.1, 0.2, 0.3, 0.02))
        replies = {1: {"fields": [], "false_positives": ["Employer Group Number"]}}
        analyzer, _ = _analyzer(replies)
        result = analyzer.analyze("form.pdf", FORM_ID, blocks=builder.blocks)
        assert [f.field_name for f in result.fields] == ["Patient Name"]

    def test_sub_column_table(self, builder):
        builder.table([["Enroll In"], [UNCHECKED]])
        replies = {1: {"fields": [], "tables": [{
            "header_texts": ["Enroll In"],
            "actual_data_row_count": 3,
            "column_types": ["CHECKBOX"],
            "sub_columns": [{"parent_header": "Enroll In", "sub_headers": ["Dental", "Vision"]}],
        }]}}
        analyzer, _ = _analyzer(replies)
        result = analyzer.analyze("form.pdf", FORM_ID, blocks=builder.blocks)

        generated = result.fields
        assert len(generated) == 6
        assert all(f.field_name.startswith("Enroll In: ") for f in generated)
        _assert_no_overlaps(generated)
        assert all(f.field_type == FieldType.CHECKBOX for f in generated)
        rows = {f.field_name: f.confidence for f in generated}
        assert rows["Enroll In: Dental (Row 1)"] == pytest.approx(0.95)
        assert rows["Enroll In: Vision (Row 2)"] == pytest.approx(0.85)
        assert rows["Enroll In: Dental (Row 3)"] == pytest.approx(0.85)


class TestFinalFieldList:
    def test_single_row_table_without_vision(self, builder):
        builder.table([["First Name", "Last Name", "DOB"], ["", "", ""]])
        analyzer, _ = _analyzer(config=PipelineConfig(vision_enabled=False))
        result = analyzer.analyze("form.pdf", FORM_ID, blocks=builder.blocks)

        assert [f.field_name for f in result.fields] == ["First Name", "Last Name", "DOB"]
        assert all(f.confidence == pytest.approx(0.95) for f in result.fields)
        _assert_no_overlaps(result.fields)

    def test_single_row_table_extended_by_vision(self, builder):
        builder.table([["First Name", "Last Name", "DOB"], ["", "", ""]])
        replies = {1: {"fields": [], "tables": [{"header_texts": ["First Name", "Last Name", "DOB"],
                                                 "actual_data_row_count": 3}]}}
        analyzer, _ = _analyzer(replies)
        result = analyzer.analyze("form.pdf", FORM_ID, blocks=builder.blocks)

        assert len(result.fields) == 9
        assert all(f.field_name.endswith(")") for f in result.fields)
        _assert_no_overlaps(result.fields)

    def test_vision_field_on_generated_cell_deduplicated(self, builder):
        builder.table([["Medication", "Dose"], ["", ""]])
        replies = {1: {"fields": [{"field_name": "Medication Name", "field_type": "TEXT",
                                   "bounding_box": _box(0.1, 0.43, 0.2, 0.03)}],
                       "tables": [{"header_texts": ["Medication", "Dose"], "actual_data_row_count": 1}]}}
        analyzer, _ = _analyzer(replies)
        result = analyzer.analyze("form.pdf", FORM_ID, blocks=builder.blocks)

        assert sorted(f.field_name for f in result.fields) == ["Dose", "Medication"]
        _assert_no_overlaps(result.fields)

    def test_table_below_legal_notice_not_generated(self, builder):
        builder.line("NOTICE OF PRIVACY PRACTICES", (0.1, 0.3, 0.5, 0.02))
        builder.table([["First Name", "Last Name"], ["", ""], ["", ""]], top=0.5)
        analyzer, _ = _analyzer(config=PipelineConfig(vision_enabled=False, include_static_labels=False))
        result = analyzer.analyze("form.pdf", FORM_ID, blocks=builder.blocks)
        assert result.fields == []


class TestMalformedVisionReplies:
    def test_non_list_fields(self, builder):
        builder.key_value("Patient Name", (0.1, 0.1, 0.15, 0.02))
        analyzer, _ = _analyzer({1: {"fields": 3}})
        result = analyzer.analyze("form.pdf", FORM_ID, blocks=builder.blocks)
        assert result.status == READY
        assert [f.field_name for f in result.fields] == ["Patient Name"]

    def test_nan_box(self, builder):
        builder.key_value("Patient Name", (0.1, 0.1, 0.15, 0.02))
        replies = {1: {"fields": [{"field_name": "Signature", "field_type": "SIGNATURE",
                                   "bounding_box": _box(0.1, 0.8, float("nan"), 0.1)}]}}
        analyzer, _ = _analyzer(replies)
        result = analyzer.analyze("form.pdf", FORM_ID, blocks=builder.blocks)
        assert result.status == READY
        assert not result.page_results[1].is_degraded
        assert [f.field_name for f in result.fields] == ["Patient Name"]

    def test_analyzer_error_degrades_page(self, builder):
        class BrokenAnalyzer:
            def analyze_page(self, image_b64, page, fields, tables):
                raise TypeError("unexpected reply shape")

        builder.key_value("Patient Name", (0.1, 0.1, 0.15, 0.02))
        analyzer = DocumentAnalyzer(vision_analyzer=BrokenAnalyzer(), renderer=FakeRenderer())
        result = analyzer.analyze("form.pdf", FORM_ID, blocks=builder.blocks)
        assert result.status == READY
        assert result.page_results[1].is_degraded
        assert len(result.fields) == 1

    def test_render_error_degrades_page(self, builder):
        class RaisingRenderer(FakeRenderer):
            def render_page_to_base64(self, path, page_index):
                raise OSError("disk went away")

        builder.key_value("Patient Name", (0.1, 0.1, 0.15, 0.02))
        analyzer = DocumentAnalyzer(vision_analyzer=VisionPageAnalyzer(PageVisionClient({})),
                                    renderer=RaisingRenderer())
        result = analyzer.analyze("form.pdf", FORM_ID, blocks=builder.blocks)
        assert result.status == READY
        assert result.page_results[1].reason == "render failed"
        assert len(result.fields) == 1
