"""
Exception hierarchy for the extraction pipeline.
"""


class FormExtractionError(Exception):
    """Base class for all extraction errors."""


class OcrProviderError(FormExtractionError):
    """The OCR provider failed; fatal for the whole document."""


class VisionProviderError(FormExtractionError):
    """The vision provider returned a non-success status or could not be reached."""

    def __init__(self, message: str, status_code: int = None):
        super().__init__(message)
        self.status_code = status_code


class RenderError(FormExtractionError):
    """A page could not be rasterized."""
