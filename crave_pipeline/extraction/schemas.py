"""
Pydantic schemas for LLM extraction input and output.

The input models are a lightweight projection of posts and comments sent to
the model. The output models define the mention contract the model must
return; RESPONSE_SCHEMA is the same contract expressed as the JSON schema
passed to the provider for structured output.
"""

import copy
from typing import Any, Literal

from pydantic import BaseModel, Field, field_validator


# =============================================================================
# Input
# =============================================================================


class LLMComment(BaseModel):
    """A comment as presented to the model."""

    id: str
    content: str
    author: str | None = None
    upvotes: int = 0
    created_at: str | None = None
    parent_id: str | None = None
    url: str | None = None


class LLMPost(BaseModel):
    """A post with its comments as presented to the model."""

    id: str
    title: str = ""
    content: str = ""
    subreddit: str = ""
    author: str | None = None
    url: str = ""
    upvotes: int = 0
    created_at: str | None = None
    extract_from_post: bool = True
    comments: list[LLMComment] = Field(default_factory=list)


class LLMInputStructure(BaseModel):
    """Request payload for one extraction call."""

    posts: list[LLMPost]


# =============================================================================
# Output
# =============================================================================


def _strip_or_none(v: str | None) -> str | None:
    if v is None:
        return None
    v = " ".join(v.split())
    return v or None


class LLMMention(BaseModel):
    """One restaurant (and optional dish) mention extracted from content.

    Request-scoped: produced by parsing the model response and consumed by
    entity resolution, never persisted as-is.
    """

    temp_id: str = Field(..., min_length=1)

    restaurant_normalized_name: str = Field(..., min_length=1)
    restaurant_original_text: str | None = None
    restaurant_attributes: list[str] | None = None

    dish_or_category_normalized_name: str | None = None
    dish_or_category_original_text: str | None = None
    dish_categories: list[str] | None = None
    dish_attributes: list[str] | None = None
    is_menu_item: bool | None = None

    general_praise: bool = False

    source_type: Literal["post", "comment"]
    source_id: str = Field(..., min_length=1)
    source_content: str
    source_upvotes: int
    source_url: str
    source_created_at: str

    @field_validator("restaurant_normalized_name", mode="before")
    @classmethod
    def clean_restaurant(cls, v: Any) -> Any:
        if isinstance(v, str):
            return _strip_or_none(v) or ""
        return v

    @field_validator("dish_or_category_normalized_name", mode="before")
    @classmethod
    def clean_dish(cls, v: Any) -> Any:
        if isinstance(v, str):
            return _strip_or_none(v)
        return v

    @field_validator(
        "restaurant_attributes", "dish_categories", "dish_attributes", mode="before"
    )
    @classmethod
    def clean_string_lists(cls, v: Any) -> Any:
        if isinstance(v, list):
            cleaned = [_strip_or_none(x) if isinstance(x, str) else x for x in v]
            return [x for x in cleaned if x]
        return v


class LLMOutputStructure(BaseModel):
    """Parsed model response."""

    mentions: list[LLMMention] = Field(default_factory=list)

    @property
    def mention_count(self) -> int:
        return len(self.mentions)


# =============================================================================
# Provider response schema
# =============================================================================


def _string(description: str, nullable: bool = False) -> dict[str, Any]:
    schema: dict[str, Any] = {"type": "string", "description": description}
    if nullable:
        schema["nullable"] = True
    return schema


def _string_list(description: str) -> dict[str, Any]:
    return {
        "type": "array",
        "description": description,
        "items": {"type": "string"},
        "nullable": True,
    }


MENTION_PROPERTIES: dict[str, Any] = {
    "temp_id": _string("Unique identifier for this mention"),
    "restaurant_normalized_name": _string(
        "Canonical restaurant name: lowercase, no articles (the/a/an), standardized spacing"
    ),
    "restaurant_original_text": _string("Restaurant name as written", nullable=True),
    "restaurant_attributes": _string_list(
        "Restaurant-scoped attributes: ambiance, features, service model, cuisine"
    ),
    "dish_or_category_normalized_name": _string(
        "Complete compound food term, singular, lowercase, excluding attributes",
        nullable=True,
    ),
    "dish_or_category_original_text": _string("Food term as written", nullable=True),
    "dish_categories": _string_list(
        "Hierarchical decomposition: parent categories, ingredient categories"
    ),
    "dish_attributes": _string_list(
        "Dish attributes: dietary, preparation style, texture, flavor"
    ),
    "is_menu_item": {
        "type": "boolean",
        "description": "True if a specific menu item, false if a general food type",
        "nullable": True,
    },
    "general_praise": {
        "type": "boolean",
        "description": "True if the mention praises the restaurant as a whole",
    },
    "source_type": {"type": "string", "enum": ["post", "comment"]},
    "source_id": _string("Id of the post or comment the mention came from"),
    "source_content": _string("Text of the source post or comment"),
    "source_upvotes": {"type": "integer"},
    "source_url": _string("Permalink of the source"),
    "source_created_at": _string("ISO-8601 creation time of the source"),
}

MENTION_REQUIRED = [
    "temp_id",
    "restaurant_normalized_name",
    "general_praise",
    "source_type",
    "source_id",
    "source_content",
    "source_upvotes",
    "source_url",
    "source_created_at",
]

RESPONSE_SCHEMA: dict[str, Any] = {
    "type": "object",
    "description": "Restaurant and food mentions extracted from community content",
    "properties": {
        "mentions": {
            "type": "array",
            "items": {
                "type": "object",
                "properties": MENTION_PROPERTIES,
                "required": MENTION_REQUIRED,
            },
        },
    },
    "required": ["mentions"],
}


def strict_json_schema(schema: dict[str, Any] | None = None) -> dict[str, Any]:
    """Convert RESPONSE_SCHEMA to the strict JSON Schema dialect.

    OpenAI strict mode requires every property to be listed as required,
    no additional properties, and nullability expressed as a type union.
    """

    def convert(node: dict[str, Any]) -> dict[str, Any]:
        node = copy.deepcopy(node)
        if node.pop("nullable", False):
            node["type"] = [node["type"], "null"]
        if "items" in node:
            node["items"] = convert(node["items"])
        if "properties" in node:
            node["properties"] = {k: convert(v) for k, v in node["properties"].items()}
            node["required"] = list(node["properties"])
            node["additionalProperties"] = False
        return node

    return convert(schema or RESPONSE_SCHEMA)
