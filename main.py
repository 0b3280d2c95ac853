import os
import argparse
import json
import logging
import time
import uuid

from formfields.config import CONFIG
from formfields.errors import FormExtractionError
from formfields.extraction import VisionPageAnalyzer
from formfields.models import ClaudeVisionClient, TextractClient, load_blocks_from_json
from formfields.processing_pipeline import DocumentAnalyzer
from formfields.utils import PageRenderer
from formfields.utils.image import IMAGE_EXTENSIONS

logger = logging.getLogger(__name__)

VALID_EXTENSIONS = IMAGE_EXTENSIONS | {'.pdf'}


def build_analyzer(args) -> DocumentAnalyzer:
    """Wire providers according to the command line."""
    ocr_client = None
    if not args.textract_json:
        ocr_client = TextractClient(region_name=args.region)

    vision_analyzer = None
    renderer = None
    if not args.no_vision:
        try:
            vision_analyzer = VisionPageAnalyzer(ClaudeVisionClient())
            renderer = PageRenderer()
        except FormExtractionError as e:
            logger.warning("Vision pass unavailable (%s); continuing with OCR only", e)

    return DocumentAnalyzer(ocr_client=ocr_client, vision_analyzer=vision_analyzer,
                            renderer=renderer, config=CONFIG)


def fetch_blocks(args, ocr_client):
    """Blocks from a saved response, an async S3 job, or None (sync path)."""
    if args.textract_json:
        return load_blocks_from_json(args.textract_json)
    if args.s3_bucket and args.s3_key:
        job = ocr_client.start_document_analysis(args.s3_bucket, args.s3_key)
        return ocr_client.wait_for_job(job.job_id)
    return None


def main():
    parser = argparse.ArgumentParser(description="Form field extraction")
    parser.add_argument("--input", type=str, required=True, help="PDF or image of the form")
    parser.add_argument("--output_dir", type=str, default="output", help="Directory to save JSON output files")
    parser.add_argument("--form-id", type=str, default=None, help="Form id for produced fields (default: random)")
    parser.add_argument("--textract-json", type=str, default=None,
                        help="Replay a saved Textract response instead of calling the OCR provider")
    parser.add_argument("--s3-bucket", type=str, default=None, help="Use the async OCR job path on this bucket")
    parser.add_argument("--s3-key", type=str, default=None, help="Object key of the document in --s3-bucket")
    parser.add_argument("--region", type=str, default=None, help="AWS region for Textract")
    parser.add_argument("--no-vision", action="store_true", help="Skip the vision pass (OCR only)")
    parser.add_argument("--log-level", choices=["DEBUG", "INFO", "WARNING"], default="INFO",
                        help="Set logging verbosity (default: INFO)")
    args = parser.parse_args()

    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s %(name)s [%(levelname)s] %(message)s",
        datefmt="%H:%M:%S",
        force=True,
    )

    # Suppress noisy third-party loggers
    logging.getLogger("PIL").setLevel(logging.WARNING)
    logging.getLogger("urllib3").setLevel(logging.WARNING)
    logging.getLogger("botocore").setLevel(logging.WARNING)
    logging.getLogger("boto3").setLevel(logging.WARNING)

    if not os.path.isfile(args.input):
        logger.error("Input file not found: %s", args.input)
        return 1
    if os.path.splitext(args.input)[1].lower() not in VALID_EXTENSIONS:
        logger.error("Unsupported file type: %s", args.input)
        return 1

    os.makedirs(args.output_dir, exist_ok=True)
    form_id = args.form_id or str(uuid.uuid4())
    output_path = os.path.join(args.output_dir, os.path.splitext(os.path.basename(args.input))[0] + ".json")

    start_time = time.time()
    try:
        analyzer = build_analyzer(args)
        blocks = fetch_blocks(args, analyzer.ocr_client)
    except (FormExtractionError, OSError, ValueError) as e:
        logger.error("Could not obtain OCR blocks: %s", e)
        result_data = {"formId": form_id, "status": "ERROR", "error": str(e), "fields": []}
    else:
        result = analyzer.analyze(args.input, form_id, blocks=blocks)
        result_data = {
            "formId": form_id,
            "status": result.status,
            "error": result.error,
            "degradedPages": sorted(p for p, r in result.page_results.items() if r.is_degraded),
            "fields": [f.to_dict() for f in result.fields],
        }

    with open(output_path, "w", encoding="utf-8") as f:
        json.dump(result_data, f, indent=2, ensure_ascii=False)

    logger.info("Finished in %.2fs: %s (%d fields) -> %s", time.time() - start_time,
                result_data["status"], len(result_data["fields"]), output_path)
    return 0 if result_data["status"] == "READY" else 1


if __name__ == "__main__":
    raise SystemExit(main())
