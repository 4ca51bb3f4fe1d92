"""
Conversion of merged content items into the LLM input payload.

Comments are grouped under their post. A comment whose post is not in the
batch (typically because the post was filtered as a duplicate) is attached
to a placeholder post with extract_from_post=False, so the model reads the
new comments without re-extracting the already processed post.
"""

import logging
from datetime import UTC, datetime

from crave_pipeline.collection.duplicates import SOURCE_PREFIX_PATTERN
from crave_pipeline.extraction.schemas import LLMComment, LLMInputStructure, LLMPost
from crave_pipeline.schemas.content import MergedContentItem, RedditComment, RedditSubmission

logger = logging.getLogger(__name__)

REDDIT_BASE_URL = "https://www.reddit.com"


def _strip_prefix(value: str | None) -> str | None:
    if not value:
        return None
    return SOURCE_PREFIX_PATTERN.sub("", value)


def _iso(epoch_seconds: float) -> str | None:
    if not epoch_seconds:
        return None
    return datetime.fromtimestamp(epoch_seconds, tz=UTC).isoformat()


def _url(permalink: str | None, fallback: str = "") -> str:
    if not permalink:
        return fallback
    if permalink.startswith("http"):
        return permalink
    return f"{REDDIT_BASE_URL}{permalink}"


def build_llm_input(items: list[MergedContentItem]) -> LLMInputStructure:
    """Build the extraction payload from deduplicated items.

    Invalid items (is_valid=False) are skipped.
    """
    posts: dict[str, LLMPost] = {}
    comments: list[tuple[str, LLMComment]] = []
    skipped = 0

    for item in items:
        if not item.is_valid:
            skipped += 1
            continue

        if item.type == "submission" and isinstance(item.data, RedditSubmission):
            post = item.data
            post_id = _strip_prefix(post.id) or post.id
            posts[post_id] = LLMPost(
                id=post_id,
                title=post.title,
                content=post.selftext or "",
                subreddit=post.subreddit,
                author=post.author,
                url=_url(post.permalink, post.url),
                upvotes=post.score,
                created_at=_iso(post.created_utc),
            )
        elif item.type == "comment" and isinstance(item.data, RedditComment):
            comment = item.data
            post_id = _strip_prefix(comment.link_id)
            if post_id is None:
                skipped += 1
                logger.warning(
                    "Skipping comment without parent post id",
                    extra={"comment_id": comment.id},
                )
                continue
            comments.append(
                (
                    post_id,
                    LLMComment(
                        id=_strip_prefix(comment.id) or comment.id,
                        content=comment.body,
                        author=comment.author,
                        upvotes=comment.score,
                        created_at=_iso(comment.created_utc),
                        parent_id=_strip_prefix(comment.parent_id),
                        url=_url(comment.permalink) or None,
                    ),
                )
            )
        else:
            skipped += 1

    for post_id, comment in comments:
        post = posts.get(post_id)
        if post is None:
            post = LLMPost(id=post_id, extract_from_post=False)
            posts[post_id] = post
        post.comments.append(comment)

    if skipped:
        logger.info("Items skipped while building LLM input", extra={"skipped": skipped})

    return LLMInputStructure(posts=list(posts.values()))
