"""
Form field extraction: OCR block parsing, vision page analysis and
multi-source field reconciliation.
"""

__version__ = "0.1.0"
