"""
Extraction prompts for restaurant and food mentions.

The system prompt is loaded from LLM_SYSTEM_PROMPT_PATH when configured,
falling back to the built-in prompt below. The content payload is appended
to the prompt as JSON.
"""

import json
import logging
from functools import lru_cache
from pathlib import Path

from crave_pipeline.extraction.schemas import LLMInputStructure

logger = logging.getLogger(__name__)


SYSTEM_PROMPT = '''You are an expert analyst of community food discussions.

Read the Reddit posts and comments provided and extract every mention of a
restaurant, optionally paired with a dish or food category.

## Rules

1. Only extract mentions that name a specific restaurant. Skip generic
   references ("a taco truck", "that place downtown").
2. restaurant_normalized_name: lowercase, no leading articles (the/a/an),
   single spaces, no punctuation except ampersands and apostrophes.
3. dish_or_category_normalized_name: the complete compound food term in
   singular form, without attributes ("brisket", "breakfast taco").
4. dish_categories: parent categories and ingredient categories of the dish
   ("breakfast taco" -> ["taco", "breakfast food"]).
5. dish_attributes: descriptors applied to the dish (spicy, vegan, smoked).
6. restaurant_attributes: descriptors applied to the restaurant (patio,
   family owned, late night, cuisine when applied to the restaurant).
7. general_praise: true when the text praises the restaurant as a whole,
   regardless of any dish-specific praise.
8. Copy the source fields (type, id, content, upvotes, url, created_at) from
   the post or comment the mention came from. Every source field is required.
9. Only consider a post's own text when extract_from_post is true; its
   comments are always considered.
10. Give each mention a unique temp_id.

Respond with JSON only, matching the provided schema.
'''


@lru_cache(maxsize=4)
def _read_prompt_file(path: str) -> str:
    return Path(path).read_text(encoding="utf-8")


def get_system_prompt(prompt_path: str | None = None) -> str:
    """Return the system prompt.

    Args:
        prompt_path: Optional file containing a replacement prompt

    Returns:
        Prompt text; the built-in prompt if the file cannot be read
    """
    if not prompt_path:
        return SYSTEM_PROMPT
    try:
        return _read_prompt_file(prompt_path)
    except OSError as e:
        logger.warning(
            "Could not read system prompt file, using built-in prompt",
            extra={"prompt_path": prompt_path, "error": str(e)},
        )
        return SYSTEM_PROMPT


def build_processing_prompt(system_prompt: str, llm_input: LLMInputStructure) -> str:
    """Build the single prompt sent to the model.

    Example:
        >>> prompt = build_processing_prompt("Extract.", LLMInputStructure(posts=[]))
        >>> prompt.startswith("Extract.")
        True
    """
    payload = json.dumps(
        llm_input.model_dump(mode="json", exclude_none=True),
        indent=2,
        ensure_ascii=False,
    )
    return f"{system_prompt}\n\nContent to process:\n{payload}"
