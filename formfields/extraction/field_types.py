"""
Keyword-based field type classification.

Rules are tried top to bottom; the first pattern that matches the label
decides the type.  Order matters: "Date of Signature" is a DATE, and
"E-mail" must win before anything numeric can.
"""

import re
from typing import List, Optional, Tuple

from formfields.fields import FieldType

FIELD_TYPE_RULES: List[Tuple[re.Pattern, FieldType]] = [
    (re.compile(r'\be-?mail\b', re.IGNORECASE), FieldType.TEXT),
    (re.compile(r'\b(date|dob|d\.o\.b\.?|birth\s*date|birthday|born)\b|\bbirth\b|mm\s*/\s*dd', re.IGNORECASE),
     FieldType.DATE),
    (re.compile(r'\bsignature\b|\bsign here\b|\bsigned\b|\binitials?\b', re.IGNORECASE), FieldType.SIGNATURE),
    (re.compile(r'\byes\s*/\s*no\b|\by\s*/\s*n\b|\bcheck\s+(one|all|if|box)\b|\bselect\s+(one|all)\b',
                re.IGNORECASE), FieldType.CHECKBOX),
    (re.compile(r'\b(phone|tel|telephone|mobile|cell|fax|zip|postal code|age|weight|height|'
                r'ssn|social security|amount|qty|quantity)\b', re.IGNORECASE), FieldType.NUMBER),
]


def classify_label(label: Optional[str], default: FieldType = FieldType.TEXT) -> FieldType:
    """Return the type of the first rule matching ``label`` (``default`` if none)."""
    if not label:
        return default
    for pattern, field_type in FIELD_TYPE_RULES:
        if pattern.search(label):
            return field_type
    return default
