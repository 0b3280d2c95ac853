"""
Page rendering: turn a PDF page (or a single image) into a JPEG payload
for multi-modal submission.
"""

import base64
import io
import logging
import os
from typing import List, Optional

from PIL import Image
import pypdfium2 as pdfium

from formfields.config import CONFIG
from formfields.errors import RenderError

logger = logging.getLogger(__name__)

IMAGE_EXTENSIONS = {'.png', '.jpg', '.jpeg', '.tif', '.tiff', '.bmp', '.gif', '.webp'}


def is_pdf(path: str) -> bool:
    return os.path.splitext(path)[1].lower() == '.pdf'


def load_image(image_path):
    """Loads an image from a file path."""
    try:
        image = Image.open(image_path).convert("RGB")
        return image
    except (OSError, ValueError) as e:
        logger.error("Error loading image %s: %s", image_path, e)
        return None


def get_page_count(path: str) -> int:
    """Number of pages in a PDF; 1 for a plain image; 0 if unreadable."""
    if not is_pdf(path):
        return 1 if os.path.isfile(path) else 0
    try:
        pdf = pdfium.PdfDocument(path)
        try:
            return len(pdf)
        finally:
            pdf.close()
    except (pdfium.PdfiumError, OSError) as e:
        logger.error("Failed to get page count for %s: %s", path, e)
        return 0


def render_page(path: str, page_index: int, scale: float = None) -> Image.Image:
    """
    Render one page to an RGB PIL image.

    Args:
        path: PDF or image file
        page_index: 0-based page index
        scale: Render scale relative to 72 dpi

    Returns:
        RGB image with a white background

    Raises:
        RenderError: if the page is out of range or rendering fails
    """
    if scale is None:
        scale = CONFIG.render_scale

    if not is_pdf(path):
        if page_index != 0:
            raise RenderError("Page index %d out of range for single image %s" % (page_index, path))
        image = load_image(path)
        if image is None:
            raise RenderError("Could not load image %s" % path)
        return image

    try:
        pdf = pdfium.PdfDocument(path)
    except (pdfium.PdfiumError, OSError) as e:
        raise RenderError("Could not open %s: %s" % (path, e)) from e

    try:
        if page_index < 0 or page_index >= len(pdf):
            raise RenderError("Page index %d out of range (0..%d)" % (page_index, len(pdf) - 1))
        page = pdf[page_index]
        bitmap = page.render(scale=scale)
        return bitmap.to_pil().convert("RGB")
    except pdfium.PdfiumError as e:
        raise RenderError("Failed to render page %d of %s: %s" % (page_index, path, e)) from e
    finally:
        pdf.close()


def encode_jpeg_base64(image: Image.Image, quality: int = None) -> str:
    """JPEG-encode an image and return it as base64 text."""
    if quality is None:
        quality = CONFIG.render_jpeg_quality
    buffer = io.BytesIO()
    image.convert("RGB").save(buffer, format="JPEG", quality=quality)
    return base64.b64encode(buffer.getvalue()).decode("ascii")


class PageRenderer:
    """Renders document pages to base64 JPEG for the vision provider."""

    def __init__(self, scale: float = None, jpeg_quality: int = None):
        self.scale = CONFIG.render_scale if scale is None else scale
        self.jpeg_quality = CONFIG.render_jpeg_quality if jpeg_quality is None else jpeg_quality

    def page_count(self, path: str) -> int:
        return get_page_count(path)

    def render_page_to_base64(self, path: str, page_index: int) -> Optional[str]:
        """Render a page; None (logged) if rendering fails."""
        try:
            image = render_page(path, page_index, scale=self.scale)
        except RenderError as e:
            logger.error("Failed to render page %d: %s", page_index, e)
            return None

        encoded = encode_jpeg_base64(image, quality=self.jpeg_quality)
        logger.debug("Page %d rendered: %dx%d, %dKB", page_index, image.width, image.height,
                     len(encoded) * 3 // 4 // 1024)
        return encoded
