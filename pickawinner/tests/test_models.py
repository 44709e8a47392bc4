"""Tests for pickawinner.models Pydantic types."""

import pytest
from pydantic import ValidationError

from pickawinner.models import (
    CollectionProgress,
    Comment,
    CommentDetails,
    CommentRules,
    PickWinnersRequest,
    RedrawRequest,
)

# ---------------------------------------------------------------------------
# Comment
# ---------------------------------------------------------------------------


class TestComment:
    """Tests for the Comment model."""

    def test_minimal(self) -> None:
        """Only the ID is required."""
        comment = Comment(id="c1")
        assert comment.text is None
        assert comment.username is None

    def test_empty_id_rejected(self) -> None:
        """Reject an empty comment ID."""
        with pytest.raises(ValidationError):
            Comment(id="")


# ---------------------------------------------------------------------------
# CommentRules
# ---------------------------------------------------------------------------


class TestCommentRules:
    """Tests for the CommentRules model."""

    def test_defaults(self) -> None:
        """Default to one winner, no mentions, no repeats."""
        rules = CommentRules()
        assert rules.num_winners == 1
        assert rules.num_mentions == 0
        assert rules.allow_repeats is False

    def test_camel_case_aliases(self) -> None:
        """Accept the camelCase names sent by the web client."""
        rules = CommentRules.model_validate({"numWinners": 3, "numMentions": 2, "allowRepeats": True})
        assert (rules.num_winners, rules.num_mentions, rules.allow_repeats) == (3, 2, True)

    def test_snake_case_names(self) -> None:
        """Accept snake_case field names as well."""
        rules = CommentRules(num_winners=2)
        assert rules.num_winners == 2

    @pytest.mark.parametrize("data", [{"numWinners": 0}, {"numMentions": -1}])
    def test_out_of_range(self, data: dict[str, int]) -> None:
        """Reject fewer than one winner or negative mentions."""
        with pytest.raises(ValidationError):
            CommentRules.model_validate(data)


# ---------------------------------------------------------------------------
# Graph payloads
# ---------------------------------------------------------------------------


class TestCommentDetails:
    """Tests for the CommentDetails model."""

    def test_from_alias(self) -> None:
        """Parse the author from the Graph API "from" key."""
        details = CommentDetails.model_validate({"id": "c1", "from": {"id": "u1", "username": "alice"}})

        assert details.from_user is not None
        assert details.from_user.username == "alice"
        assert details.model_dump(by_alias=True)["from"] == {"id": "u1", "username": "alice"}

    def test_without_author(self) -> None:
        """Allow a comment without author info."""
        assert CommentDetails(id="c1").from_user is None


class TestCollectionProgress:
    """Tests for the CollectionProgress model."""

    def test_page_number_starts_at_one(self) -> None:
        """Reject a page number of zero."""
        with pytest.raises(ValidationError):
            CollectionProgress(page_number=0, page_count=0, total_count=0)


# ---------------------------------------------------------------------------
# API bodies
# ---------------------------------------------------------------------------


class TestApiModels:
    """Tests for request bodies."""

    def test_pick_winners_default_rules(self) -> None:
        """Use the default rules when none are given."""
        req = PickWinnersRequest(media_id="m1")
        assert req.rules == CommentRules()

    def test_redraw_requires_winners(self) -> None:
        """Reject a redraw request without current winners."""
        with pytest.raises(ValidationError):
            RedrawRequest(current_winners=[], eligible=[], winner_id="c1")
