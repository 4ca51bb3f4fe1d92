"""
Pytest configuration and shared fixtures.

Provides builders for merged content items and extracted mentions used
across the unit test packages.
"""

import os
from pathlib import Path

import pytest


def pytest_configure(config):
    """
    Pytest hook that runs before test collection.

    Loads .env.test (when present) before any crave_pipeline module reads
    its settings, and switches logging to plain text.
    """
    from dotenv import load_dotenv

    os.environ.setdefault("TESTING", "true")
    test_env_path = Path(__file__).parent.parent / ".env.test"
    if test_env_path.exists():
        load_dotenv(test_env_path, override=True)


# =============================================================================
# Content Builders
# =============================================================================


def make_submission(
    post_id: str = "abc123",
    created_utc: float = 1_700_000_000,
    source_type: str = "pushshift_archive",
    normalized_timestamp: float | None = None,
    title: str = "Best brisket in town?",
    selftext: str = "Looking for recommendations",
    subreddit: str = "austinfood",
    is_valid: bool = True,
):
    """Build a merged submission item."""
    from crave_pipeline.schemas.content import DataSourceMetadata, MergedContentItem, RedditSubmission

    return MergedContentItem(
        type="submission",
        data=RedditSubmission(
            id=post_id,
            name=f"t3_{post_id}" if post_id else None,
            title=title,
            author="foodie",
            subreddit=subreddit,
            created_utc=created_utc,
            score=42,
            url=f"https://www.reddit.com/r/{subreddit}/comments/{post_id}/",
            num_comments=3,
            selftext=selftext,
            permalink=f"/r/{subreddit}/comments/{post_id}/",
        ),
        source_metadata=DataSourceMetadata(
            source_type=source_type,
            original_id=f"t3_{post_id}" if post_id else None,
        ),
        normalized_timestamp=created_utc if normalized_timestamp is None else normalized_timestamp,
        is_valid=is_valid,
    )


def make_comment(
    comment_id: str = "c1",
    post_id: str = "abc123",
    created_utc: float = 1_700_000_100,
    source_type: str = "reddit_api_chronological",
    normalized_timestamp: float | None = None,
    body: str = "Franklin BBQ has the best brisket",
    subreddit: str = "austinfood",
    original_id: str | None = None,
):
    """Build a merged comment item."""
    from crave_pipeline.schemas.content import DataSourceMetadata, MergedContentItem, RedditComment

    return MergedContentItem(
        type="comment",
        data=RedditComment(
            id=comment_id,
            name=f"t1_{comment_id}" if comment_id else None,
            body=body,
            author="bbqfan",
            subreddit=subreddit,
            created_utc=created_utc,
            score=7,
            link_id=f"t3_{post_id}",
            parent_id=f"t3_{post_id}",
            permalink=f"/r/{subreddit}/comments/{post_id}/_/{comment_id}/",
        ),
        source_metadata=DataSourceMetadata(
            source_type=source_type,
            original_id=original_id,
        ),
        normalized_timestamp=created_utc if normalized_timestamp is None else normalized_timestamp,
    )


def make_mention(
    temp_id: str = "m1",
    restaurant: str = "franklin bbq",
    dish: str | None = "brisket",
    source_id: str = "c1",
    upvotes: int = 7,
    **overrides,
):
    """Build an extracted mention."""
    from crave_pipeline.extraction.schemas import LLMMention

    data = {
        "temp_id": temp_id,
        "restaurant_normalized_name": restaurant,
        "restaurant_original_text": restaurant.title(),
        "dish_or_category_normalized_name": dish,
        "dish_or_category_original_text": dish,
        "is_menu_item": True if dish else None,
        "source_type": "comment",
        "source_id": source_id,
        "source_content": f"{restaurant} has great {dish or 'food'}",
        "source_upvotes": upvotes,
        "source_url": f"https://www.reddit.com/r/austinfood/comments/abc123/_/{source_id}/",
        "source_created_at": "2023-11-14T22:13:20+00:00",
    }
    data.update(overrides)
    return LLMMention(**data)


@pytest.fixture
def submission_factory():
    return make_submission


@pytest.fixture
def comment_factory():
    return make_comment


@pytest.fixture
def mention_factory():
    return make_mention
