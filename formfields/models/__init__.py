"""
Provider clients: OCR analysis (Textract) and the vision model.
"""

from .claude_vision import ClaudeVisionClient, VisionReply
from .textract import JobStatus, TextractClient, load_blocks_from_json

__all__ = [
    'ClaudeVisionClient',
    'VisionReply',
    'JobStatus',
    'TextractClient',
    'load_blocks_from_json',
]
