"""
Salvaging JSON from free-form model replies.

Models wrap their JSON in prose or code fences, and a reply cut off at the
token limit ends mid-object.  ``extract_json_object`` isolates the outermost
object; ``repair_truncated_json`` keeps every complete entry of the
``fields`` array and closes the structure.
"""

import logging
from typing import Optional

logger = logging.getLogger(__name__)

REPAIR_SUFFIX = '], "tables": [], "false_positives": []}'


def extract_json_object(text: str) -> Optional[str]:
    """
    Slice ``text`` from the first ``{`` to the last ``}``.

    When no closing brace follows the opening one (a truncated reply), the
    remainder of the text is returned so it can still be repaired.

    Returns:
        The candidate JSON text, or None if there is no ``{`` at all.
    """
    if not text:
        return None
    start = text.find('{')
    if start < 0:
        return None
    end = text.rfind('}')
    if end > start:
        return text[start:end + 1]
    return text[start:]


def repair_truncated_json(text: str) -> Optional[str]:
    """
    Rebuild a truncated ``{"fields": [...]...}`` reply.

    Scans the ``fields`` array tracking string, escape and brace state,
    cuts the text right after the last fully-closed element object, and
    appends ``], "tables": [], "false_positives": []}``.

    Args:
        text: JSON text starting at the root object

    Returns:
        Repaired JSON text, or None when no complete field object exists.
    """
    if not text:
        return None

    key_pos = text.find('"fields"')
    search_from = key_pos + len('"fields"') if key_pos >= 0 else 0
    array_start = text.find('[', search_from)
    if array_start < 0:
        return None

    depth = 0
    last_complete_end = -1
    in_string = False
    escape = False

    for i in range(array_start + 1, len(text)):
        c = text[i]
        if escape:
            escape = False
            continue
        if c == '\\':
            escape = in_string
            continue
        if c == '"':
            in_string = not in_string
            continue
        if in_string:
            continue

        if c == '{':
            depth += 1
        elif c == '}':
            depth -= 1
            if depth == 0:
                last_complete_end = i
            elif depth < 0:
                break
        elif c == ']' and depth == 0:
            # The fields array itself closed; anything later is not ours to keep.
            break

    if last_complete_end < 0:
        return None

    repaired = text[:last_complete_end + 1] + REPAIR_SUFFIX
    logger.debug("Repaired truncated JSON: kept %d of %d chars", last_complete_end + 1, len(text))
    return repaired
