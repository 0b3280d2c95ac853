"""
OCR provider client: AWS Textract FORMS + TABLES analysis.

Two paths:
- ``analyze_document``: synchronous, for small single-page documents
- ``start_document_analysis`` / ``get_document_analysis`` / ``wait_for_job``:
  the asynchronous job path for multi-page documents in S3

Every provider failure surfaces as ``OcrProviderError``, except a stale or
expired job id, which reads as a FAILED job.
"""

import json
import logging
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from formfields.config import CONFIG, PipelineConfig
from formfields.errors import OcrProviderError

logger = logging.getLogger(__name__)

FEATURE_TYPES = ["FORMS", "TABLES"]

# Job state machine: SUBMITTED -> IN_PROGRESS -> SUCCEEDED | FAILED
SUBMITTED = "SUBMITTED"
IN_PROGRESS = "IN_PROGRESS"
SUCCEEDED = "SUCCEEDED"
FAILED = "FAILED"

_PROVIDER_STATUS = {
    "IN_PROGRESS": IN_PROGRESS,
    "SUCCEEDED": SUCCEEDED,
    "PARTIAL_SUCCESS": SUCCEEDED,
    "FAILED": FAILED,
}


@dataclass(frozen=True)
class JobStatus:
    job_id: str
    status: str
    blocks: List[Dict] = field(default_factory=list)
    message: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in (SUCCEEDED, FAILED)


def load_blocks_from_json(path: str) -> List[Dict]:
    """Read a saved Textract response (``{"Blocks": [...]}`` or a bare block list)."""
    with open(path, "r", encoding="utf-8") as f:
        data = json.load(f)
    if isinstance(data, list):
        return data
    if isinstance(data, dict) and isinstance(data.get("Blocks"), list):
        return data["Blocks"]
    raise ValueError("%s does not contain a Textract Blocks list" % path)


class TextractClient:
    """boto3 Textract wrapper returning raw block lists."""

    def __init__(self, client=None, region_name: Optional[str] = None,
                 config: PipelineConfig = CONFIG):
        self.config = config
        if client is None:
            try:
                client = boto3.client(
                    "textract",
                    region_name=region_name,
                    config=Config(read_timeout=config.textract_read_timeout),
                )
            except BotoCoreError as e:
                raise OcrProviderError("Could not create Textract client: %s" % e) from e
        self.client = client

    # ------------------------------------------------------------------
    # Synchronous path
    # ------------------------------------------------------------------

    def analyze_document(self, document_bytes: Optional[bytes] = None,
                         bucket: Optional[str] = None, key: Optional[str] = None) -> List[Dict]:
        """
        Analyze a small document in one call.

        Pass either raw ``document_bytes`` or an S3 ``bucket``/``key``.

        Raises:
            OcrProviderError: on any provider failure
        """
        if document_bytes is not None:
            document = {"Bytes": document_bytes}
        elif bucket and key:
            document = {"S3Object": {"Bucket": bucket, "Name": key}}
        else:
            raise ValueError("analyze_document needs document_bytes or bucket and key")

        try:
            response = self.client.analyze_document(Document=document, FeatureTypes=FEATURE_TYPES)
        except (ClientError, BotoCoreError) as e:
            logger.error("Textract analyze_document failed: %s", e)
            raise OcrProviderError("Textract analysis failed: %s" % e) from e

        blocks = response.get("Blocks") or []
        logger.info("Textract returned %d blocks", len(blocks))
        return blocks

    # ------------------------------------------------------------------
    # Asynchronous job path
    # ------------------------------------------------------------------

    def start_document_analysis(self, bucket: str, key: str) -> JobStatus:
        """Submit an S3 document; returns a SUBMITTED job."""
        try:
            response = self.client.start_document_analysis(
                DocumentLocation={"S3Object": {"Bucket": bucket, "Name": key}},
                FeatureTypes=FEATURE_TYPES,
            )
        except (ClientError, BotoCoreError) as e:
            logger.error("Textract start_document_analysis failed for s3://%s/%s: %s", bucket, key, e)
            raise OcrProviderError("Could not start Textract job: %s" % e) from e

        job_id = response["JobId"]
        logger.info("Textract job %s submitted for s3://%s/%s", job_id, bucket, key)
        return JobStatus(job_id=job_id, status=SUBMITTED)

    def get_document_analysis(self, job_id: str) -> JobStatus:
        """
        Poll a job once.  Safe to call repeatedly.

        On success all result pages are fetched (following ``NextToken``).
        An unknown or expired job id yields a FAILED status instead of an
        exception.
        """
        blocks: List[Dict] = []
        next_token = None
        while True:
            kwargs = {"JobId": job_id}
            if next_token:
                kwargs["NextToken"] = next_token
            try:
                response = self.client.get_document_analysis(**kwargs)
            except ClientError as e:
                code = e.response.get("Error", {}).get("Code")
                if code == "InvalidJobIdException":
                    logger.warning("Textract job %s is unknown or expired", job_id)
                    return JobStatus(job_id=job_id, status=FAILED, message="Job id expired or unknown")
                logger.error("Textract get_document_analysis failed for %s: %s", job_id, e)
                raise OcrProviderError("Could not poll Textract job %s: %s" % (job_id, e)) from e
            except BotoCoreError as e:
                logger.error("Textract get_document_analysis failed for %s: %s", job_id, e)
                raise OcrProviderError("Could not poll Textract job %s: %s" % (job_id, e)) from e

            provider_status = response.get("JobStatus")
            status = _PROVIDER_STATUS.get(provider_status)
            if status is None:
                return JobStatus(job_id=job_id, status=FAILED,
                                 message="Unknown job status: %s" % provider_status)
            if status != SUCCEEDED:
                return JobStatus(job_id=job_id, status=status, message=response.get("StatusMessage"))
            if provider_status == "PARTIAL_SUCCESS":
                logger.warning("Textract job %s partially succeeded: %s", job_id, response.get("StatusMessage"))

            blocks.extend(response.get("Blocks") or [])
            next_token = response.get("NextToken")
            if not next_token:
                break

        logger.info("Textract job %s succeeded: %d blocks", job_id, len(blocks))
        return JobStatus(job_id=job_id, status=SUCCEEDED, blocks=blocks)

    def wait_for_job(self, job_id: str, poll_interval: Optional[float] = None,
                     max_wait: Optional[float] = None,
                     sleep: Callable[[float], None] = time.sleep) -> List[Dict]:
        """
        Poll until the job finishes.

        Returns:
            The job's blocks

        Raises:
            OcrProviderError: if the job fails, expires, or exceeds ``max_wait``
        """
        poll_interval = self.config.textract_poll_interval if poll_interval is None else poll_interval
        max_wait = self.config.textract_max_wait if max_wait is None else max_wait

        waited = 0.0
        while True:
            job = self.get_document_analysis(job_id)
            if job.status == SUCCEEDED:
                return job.blocks
            if job.status == FAILED:
                raise OcrProviderError("Textract job %s failed: %s" % (job_id, job.message))
            if waited >= max_wait:
                raise OcrProviderError("Textract job %s still running after %.0fs" % (job_id, waited))
            logger.debug("Textract job %s %s, waiting %.1fs", job_id, job.status, poll_interval)
            sleep(poll_interval)
            waited += poll_interval
