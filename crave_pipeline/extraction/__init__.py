"""
LLM extraction of restaurant and dish mentions.

Example:
    from crave_pipeline.extraction import ExtractionClient, LLMInputStructure

    client = ExtractionClient()
    output = await client.process_content(LLMInputStructure(posts=posts))
"""

from crave_pipeline.extraction.base import LLMCompletion, LLMTransport
from crave_pipeline.extraction.client import ExtractionClient
from crave_pipeline.extraction.factory import create_transport
from crave_pipeline.extraction.response_parser import (
    ParsedMentions,
    parse_mentions,
    repair_truncated_json,
    strip_code_fences,
)
from crave_pipeline.extraction.retry import RetryPolicy, retry_async
from crave_pipeline.extraction.schemas import (
    LLMComment,
    LLMInputStructure,
    LLMMention,
    LLMOutputStructure,
    LLMPost,
)

__all__ = [
    "ExtractionClient",
    "LLMCompletion",
    "LLMTransport",
    "create_transport",
    "ParsedMentions",
    "parse_mentions",
    "repair_truncated_json",
    "strip_code_fences",
    "RetryPolicy",
    "retry_async",
    "LLMComment",
    "LLMInputStructure",
    "LLMMention",
    "LLMOutputStructure",
    "LLMPost",
]
