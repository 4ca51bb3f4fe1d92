"""
Parsing and repair of LLM extraction responses.

Three distinct steps:
1. strip_code_fences: remove Markdown ```json fences some models add
2. repair_truncated_json: best-effort recovery of output cut off mid-array
   when the model hit its token budget
3. parse_mentions: decode, check the contract shape, validate each mention

Repair is lossy: it keeps only the mentions that were fully written before
the cut. Every successful repair is logged and counted so data quality can
be monitored.
"""

import json
import logging
from dataclasses import dataclass

from pydantic import ValidationError as PydanticValidationError

from crave_pipeline.core.errors import ResponseParsingError
from crave_pipeline.extraction.schemas import LLMMention, LLMOutputStructure
from crave_pipeline.observability import (
    extraction_dropped_mentions_total,
    extraction_repairs_total,
)

logger = logging.getLogger(__name__)

REPAIR_SUFFIX = "\n  ]\n}"

# Upper bound on truncation points tried before giving up
MAX_REPAIR_CANDIDATES = 50

RAW_PREVIEW_LENGTH = 500


@dataclass
class ParsedMentions:
    """Result of parsing one response."""

    output: LLMOutputStructure
    repaired: bool = False
    dropped_mentions: int = 0


def strip_code_fences(text: str) -> str:
    """Remove a surrounding ```json ... ``` or ``` ... ``` wrapper."""
    cleaned = text.strip()
    if cleaned.startswith("```json"):
        cleaned = cleaned[len("```json"):]
    elif cleaned.startswith("```"):
        cleaned = cleaned[len("```"):]
    if cleaned.endswith("```"):
        cleaned = cleaned[: -len("```")]
    return cleaned.strip()


def is_truncated(text: str) -> bool:
    """Whether cleaned JSON text is missing its closing bracket."""
    return not (text.endswith("}") or text.endswith("]"))


def repair_truncated_json(text: str) -> str | None:
    """Recover a truncated ``{"mentions": [...`` document.

    Walks back through the last fully closed objects (``},``) in the text,
    truncates after the closing brace and closes the array and root object.
    The first candidate that decodes as JSON wins.

    Args:
        text: Cleaned response text that does not end in } or ]

    Returns:
        Repaired JSON text, or None if no truncation point yields valid JSON
    """
    position = len(text)
    for _ in range(MAX_REPAIR_CANDIDATES):
        position = text.rfind("},", 0, position)
        if position == -1:
            return None
        candidate = text[: position + 1] + REPAIR_SUFFIX
        try:
            json.loads(candidate)
        except json.JSONDecodeError:
            continue
        return candidate
    return None


def _preview(text: str) -> str:
    return text[:RAW_PREVIEW_LENGTH]


def parse_mentions(raw_text: str) -> ParsedMentions:
    """Parse a model response into validated mentions.

    Args:
        raw_text: Text content of the first response candidate

    Returns:
        ParsedMentions with the output and repair/drop accounting

    Raises:
        ResponseParsingError: If the text is empty, cannot be decoded even
            after repair, has no ``mentions`` array, or every mention in a
            non-empty array fails validation. The raw text is attached.
    """
    if not raw_text or not raw_text.strip():
        raise ResponseParsingError("Empty response text", raw_payload=raw_text)

    cleaned = strip_code_fences(raw_text)
    repaired = False

    if is_truncated(cleaned):
        candidate = repair_truncated_json(cleaned)
        if candidate is not None:
            extraction_repairs_total.inc()
            logger.warning(
                "Repaired truncated LLM response",
                extra={
                    "original_length": len(cleaned),
                    "repaired_length": len(candidate),
                    "discarded_tail": _preview(cleaned[len(candidate) - len(REPAIR_SUFFIX):]),
                },
            )
            cleaned = candidate
            repaired = True

    try:
        data = json.loads(cleaned)
    except json.JSONDecodeError as e:
        raise ResponseParsingError(
            f"Response is not valid JSON: {e}",
            raw_payload=raw_text,
            context={"preview": _preview(cleaned)},
            cause=e,
        )

    # Some models wrap the root object in an array
    if isinstance(data, list):
        if not data:
            raise ResponseParsingError("Response is an empty array", raw_payload=raw_text)
        data = data[0]

    if not isinstance(data, dict) or not isinstance(data.get("mentions"), list):
        raise ResponseParsingError(
            "Response is missing a 'mentions' array",
            raw_payload=raw_text,
            context={"preview": _preview(cleaned)},
        )

    raw_mentions = data["mentions"]
    mentions: list[LLMMention] = []
    dropped = 0

    for index, raw in enumerate(raw_mentions):
        try:
            mentions.append(LLMMention.model_validate(raw))
        except PydanticValidationError as e:
            dropped += 1
            extraction_dropped_mentions_total.inc()
            logger.warning(
                "Dropping mention that failed validation",
                extra={
                    "index": index,
                    "temp_id": raw.get("temp_id") if isinstance(raw, dict) else None,
                    "errors": e.errors(include_url=False, include_context=False),
                },
            )

    if raw_mentions and not mentions:
        raise ResponseParsingError(
            f"All {len(raw_mentions)} mentions failed validation",
            raw_payload=raw_text,
        )

    return ParsedMentions(
        output=LLMOutputStructure(mentions=mentions),
        repaired=repaired,
        dropped_mentions=dropped,
    )
