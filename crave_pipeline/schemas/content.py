"""
Pydantic schemas for community content entering the pipeline.

MergedContentItem is produced by an upstream merge step that interleaves
archive and live API data; the pipeline only reads it.
"""

from datetime import datetime
from enum import Enum
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field


class DataSourceType(str, Enum):
    """Where a content item was collected from."""

    PUSHSHIFT_ARCHIVE = "pushshift_archive"
    REDDIT_API_CHRONOLOGICAL = "reddit_api_chronological"
    REDDIT_API_KEYWORD_SEARCH = "reddit_api_keyword_search"
    REDDIT_API_ON_DEMAND = "reddit_api_on_demand"


class RedditSubmission(BaseModel):
    """A post as delivered by an archive or the Reddit API."""

    model_config = ConfigDict(extra="ignore")

    id: str = ""
    name: str | None = None  # Full id with t3_ prefix
    title: str = ""
    author: str | None = None
    subreddit: str = ""
    created_utc: float = 0
    score: int = 0
    url: str = ""
    num_comments: int = 0
    selftext: str | None = None
    permalink: str | None = None


class RedditComment(BaseModel):
    """A comment as delivered by an archive or the Reddit API."""

    model_config = ConfigDict(extra="ignore")

    id: str = ""
    name: str | None = None  # Full id with t1_ prefix
    body: str = ""
    author: str | None = None
    subreddit: str = ""
    created_utc: float = 0
    score: int = 0
    link_id: str | None = None
    parent_id: str | None = None
    permalink: str | None = None


class DataSourceMetadata(BaseModel):
    """Source attribution attached by the merge step."""

    source_type: DataSourceType
    source_path: str | None = None
    collection_timestamp: datetime | None = None
    processing_batch: str | None = None
    original_id: str | None = None
    permalink: str | None = None


class MergedContentItem(BaseModel):
    """A post or comment together with its merge metadata."""

    model_config = ConfigDict(frozen=True)

    type: Literal["submission", "comment"]
    data: RedditSubmission | RedditComment
    source_metadata: DataSourceMetadata
    normalized_timestamp: float = Field(..., description="Epoch seconds")
    is_valid: bool = True
    validation_issues: list[str] = Field(default_factory=list)
