"""
Interfaces of the external collaborators the pipeline drives.

Fetching/merging content and recomputing quality scores belong to other
services; the orchestrator only depends on these protocols.
"""

from typing import Protocol
from uuid import UUID

from crave_pipeline.schemas.content import MergedContentItem
from crave_pipeline.schemas.entities import Connection
from crave_pipeline.schemas.jobs import ProcessingOptions


class ContentSource(Protocol):
    """Fetches a post with its comments as merged content items."""

    async def fetch_post_with_comments(
        self,
        post_id: str,
        subreddit: str,
        options: ProcessingOptions,
    ) -> list[MergedContentItem]:
        ...


class QualityScoreTrigger(Protocol):
    """Notified after entities and connections were written."""

    async def on_entities_updated(
        self,
        entity_ids: set[UUID],
        connections: list[Connection],
        correlation_id: str,
    ) -> None:
        ...
