"""
Unit tests for build_llm_input.
"""

from crave_pipeline.pipeline.llm_input import build_llm_input


class TestBuildLLMInput:
    """Tests for grouping merged items into the extraction payload."""

    def test_comments_grouped_under_post(self, submission_factory, comment_factory):
        items = [
            submission_factory(post_id="abc123"),
            comment_factory(comment_id="c1", post_id="abc123"),
            comment_factory(comment_id="c2", post_id="abc123"),
        ]

        llm_input = build_llm_input(items)

        assert len(llm_input.posts) == 1
        post = llm_input.posts[0]
        assert post.id == "abc123"
        assert post.extract_from_post is True
        assert post.title == "Best brisket in town?"
        assert post.url == "https://www.reddit.com/r/austinfood/comments/abc123/"
        assert post.created_at == "2023-11-14T22:13:20+00:00"
        assert [c.id for c in post.comments] == ["c1", "c2"]
        assert post.comments[0].parent_id == "abc123"
        assert post.comments[0].upvotes == 7

    def test_prefixed_ids_are_stripped(self, submission_factory, comment_factory):
        items = [
            submission_factory(post_id="t3_abc123"),
            comment_factory(comment_id="t1_c1", post_id="abc123"),
        ]

        post = build_llm_input(items).posts[0]

        assert post.id == "abc123"
        assert post.comments[0].id == "c1"

    def test_orphan_comments_get_placeholder_post(self, comment_factory):
        """Comments whose post was filtered are read without re-extracting the post."""
        llm_input = build_llm_input([comment_factory(post_id="old")])

        post = llm_input.posts[0]
        assert post.id == "old"
        assert post.extract_from_post is False
        assert post.title == ""
        assert len(post.comments) == 1

    def test_invalid_items_skipped(self, submission_factory):
        llm_input = build_llm_input([submission_factory(is_valid=False)])
        assert llm_input.posts == []

    def test_comment_without_link_skipped(self, comment_factory):
        comment = comment_factory()
        comment.data.link_id = None

        assert build_llm_input([comment]).posts == []

    def test_empty(self):
        assert build_llm_input([]).posts == []
