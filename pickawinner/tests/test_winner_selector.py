"""Tests for pickawinner.winner_selector module."""

import asyncio
import random
from collections import Counter
from collections.abc import Callable

import pytest

from pickawinner.models import Comment, CommentRules
from pickawinner.winner_selector import (
    NoEligibleCommentsError,
    NoRemainingEligibleError,
    UsernameResolver,
    WinnerNotFoundError,
    backfill_usernames,
    count_mentions,
    draw_random,
    filter_eligible_comments,
    redraw_winner,
    replace_winner,
    select_winners,
)

ResolverFactory = Callable[..., UsernameResolver]


def _comments(n: int) -> list[Comment]:
    return [Comment(id=f"c{i}", text=f"comment {i}", username=f"user{i}") for i in range(n)]


# ---------------------------------------------------------------------------
# count_mentions
# ---------------------------------------------------------------------------


class TestCountMentions:
    """Tests for the count_mentions helper."""

    @pytest.mark.parametrize(
        ("text", "expected"),
        [
            ("hi @a @b", 2),
            ("no mentions", 0),
            ("@x", 1),
            ("@@double", 1),
            ("mail me at a@b.com", 1),
            ("@ alone", 0),
            ("@one@two", 1),
        ],
    )
    def test_counts(self, text: str, expected: int) -> None:
        """Count non-overlapping '@' + non-whitespace tokens."""
        assert count_mentions(text) == expected


# ---------------------------------------------------------------------------
# draw_random
# ---------------------------------------------------------------------------


class TestDrawRandom:
    """Tests for the Fisher-Yates draw."""

    def test_returns_distinct_items(self) -> None:
        """Draw the requested number of distinct comments."""
        pool = _comments(10)
        drawn = draw_random(pool, 4, random.Random(1))
        assert len(drawn) == 4
        assert len({c.id for c in drawn}) == 4

    def test_does_not_mutate_pool(self) -> None:
        """Leave the input sequence untouched."""
        pool = _comments(5)
        before = [c.id for c in pool]
        draw_random(pool, 5, random.Random(2))
        assert [c.id for c in pool] == before

    def test_full_draw_is_permutation(self) -> None:
        """Drawing every item returns a permutation of the pool."""
        pool = _comments(6)
        drawn = draw_random(pool, 6, random.Random(3))
        assert sorted(c.id for c in drawn) == sorted(c.id for c in pool)

    def test_empty_pool(self) -> None:
        """Return an empty list for an empty pool."""
        assert draw_random([], 3) == []

    def test_uniform_selection(self) -> None:
        """Each comment wins a single draw with frequency close to 1/N."""
        pool = _comments(5)
        rng = random.Random(12345)
        trials = 20_000

        counts = Counter(draw_random(pool, 1, rng)[0].id for _ in range(trials))

        expected = trials / len(pool)
        for comment in pool:
            assert abs(counts[comment.id] - expected) < expected * 0.1


# ---------------------------------------------------------------------------
# backfill_usernames
# ---------------------------------------------------------------------------


class TestBackfillUsernames:
    """Tests for the batched username backfill."""

    async def test_skips_comments_with_username(self, make_resolver: ResolverFactory) -> None:
        """Never look up a comment that already has a username."""
        calls: list[str] = []
        comments = [
            Comment(id="a", text="x", username="known"),
            Comment(id="b", text="y"),
        ]

        result = await backfill_usernames(comments, make_resolver({"b": "resolved"}, calls))

        assert calls == ["b"]
        assert [c.username for c in result] == ["known", "resolved"]

    async def test_does_not_mutate_input(self, make_resolver: ResolverFactory) -> None:
        """Return copies instead of modifying the given comments."""
        comment = Comment(id="a", text="x")
        await backfill_usernames([comment], make_resolver({"a": "someone"}))
        assert comment.username is None

    async def test_unresolved_stays_none(self, make_resolver: ResolverFactory) -> None:
        """Leave the username empty when the resolver finds nothing."""
        result = await backfill_usernames([Comment(id="a", text="x")], make_resolver({}))
        assert result[0].username is None

    async def test_failed_lookup_does_not_affect_batch(self) -> None:
        """A raising lookup only leaves its own comment unresolved."""

        async def resolve(comment_id: str) -> str | None:
            if comment_id == "bad":
                raise RuntimeError("boom")
            return f"user-{comment_id}"

        comments = [Comment(id="ok1"), Comment(id="bad"), Comment(id="ok2")]
        result = await backfill_usernames(comments, resolve)

        assert [c.username for c in result] == ["user-ok1", None, "user-ok2"]

    async def test_batches_run_sequentially_with_bounded_concurrency(self) -> None:
        """Run at most batch_size lookups at once and finish each batch before the next."""
        in_flight = 0
        max_in_flight = 0
        order: list[str] = []

        async def resolve(comment_id: str) -> str | None:
            nonlocal in_flight, max_in_flight
            in_flight += 1
            max_in_flight = max(max_in_flight, in_flight)
            order.append(f"start-{comment_id}")
            await asyncio.sleep(0)
            order.append(f"end-{comment_id}")
            in_flight -= 1
            return comment_id

        comments = [Comment(id=str(i)) for i in range(12)]
        result = await backfill_usernames(comments, resolve, batch_size=5)

        assert max_in_flight == 5
        assert [c.username for c in result] == [str(i) for i in range(12)]
        # Every lookup of batch one ends before any lookup of batch two starts.
        last_end_batch_one = max(order.index(f"end-{i}") for i in range(5))
        first_start_batch_two = min(order.index(f"start-{i}") for i in range(5, 10))
        assert last_end_batch_one < first_start_batch_two

    async def test_invalid_batch_size(self, make_resolver: ResolverFactory) -> None:
        """Reject a batch size below one."""
        with pytest.raises(ValueError, match="batch_size"):
            await backfill_usernames([Comment(id="a")], make_resolver({}), batch_size=0)


# ---------------------------------------------------------------------------
# filter_eligible_comments
# ---------------------------------------------------------------------------


class TestFilterEligibleComments:
    """Tests for the eligibility rules."""

    async def test_drops_comments_without_text(
        self,
        sample_comments: list[Comment],
        make_resolver: ResolverFactory,
    ) -> None:
        """Exclude comments whose text is empty or missing."""
        rules = CommentRules(allow_repeats=True)
        result = await filter_eligible_comments(sample_comments, rules, make_resolver({}))
        assert {c.id for c in result} == {"c1", "c2", "c3", "c4", "c7"}

    async def test_mention_filter(self, make_resolver: ResolverFactory) -> None:
        """Keep only comments with at least num_mentions mentions."""
        comments = [
            Comment(id="1", text="hi @a @b", username="u1"),
            Comment(id="2", text="no mentions", username="u2"),
            Comment(id="3", text="@x", username="u3"),
        ]
        rules = CommentRules(num_mentions=2, allow_repeats=True)

        result = await filter_eligible_comments(comments, rules, make_resolver({}))

        assert [c.id for c in result] == ["1"]

    async def test_dedupe_keeps_first_occurrence(self, make_resolver: ResolverFactory) -> None:
        """Keep only the first comment of each username."""
        comments = [
            Comment(id="1", text="first", username="a"),
            Comment(id="2", text="second", username="a"),
            Comment(id="3", text="third", username="b"),
        ]
        rules = CommentRules(allow_repeats=False)

        result = await filter_eligible_comments(comments, rules, make_resolver({}))

        assert [c.id for c in result] == ["1", "3"]

    async def test_allow_repeats_keeps_all(self, make_resolver: ResolverFactory) -> None:
        """Keep repeat users when repeats are allowed."""
        comments = [
            Comment(id="1", text="first", username="a"),
            Comment(id="2", text="second", username="a"),
        ]
        result = await filter_eligible_comments(comments, CommentRules(allow_repeats=True), make_resolver({}))
        assert len(result) == 2

    async def test_allow_repeats_skips_lookups(self, make_resolver: ResolverFactory) -> None:
        """Do not resolve usernames when repeats are allowed."""
        calls: list[str] = []
        comments = [Comment(id="1", text="no username")]
        await filter_eligible_comments(comments, CommentRules(allow_repeats=True), make_resolver({}, calls))
        assert calls == []

    async def test_backfills_before_dedupe(self, make_resolver: ResolverFactory) -> None:
        """Resolve missing usernames, then dedupe on the resolved names."""
        comments = [
            Comment(id="1", text="hello", username="a"),
            Comment(id="2", text="again"),
            Comment(id="3", text="other"),
        ]
        resolver = make_resolver({"2": "a", "3": "b"})

        result = await filter_eligible_comments(comments, CommentRules(), resolver)

        assert [(c.id, c.username) for c in result] == [("1", "a"), ("3", "b")]

    async def test_unresolved_username_excluded(self, make_resolver: ResolverFactory) -> None:
        """Exclude comments whose username cannot be resolved."""
        comments = [
            Comment(id="1", text="hello"),
            Comment(id="2", text="hi", username="b"),
        ]
        result = await filter_eligible_comments(comments, CommentRules(), make_resolver({}))
        assert [c.id for c in result] == ["2"]


# ---------------------------------------------------------------------------
# select_winners
# ---------------------------------------------------------------------------


class TestSelectWinners:
    """Tests for the select_winners function."""

    async def test_single_winner(self, sample_comments: list[Comment], make_resolver: ResolverFactory) -> None:
        """Pick exactly one winner from the eligible comments."""
        result = await select_winners(sample_comments, CommentRules(), make_resolver({}), rng=random.Random(42))

        assert len(result.winners) == 1
        assert result.winners[0].id in {c.id for c in result.eligible}
        assert result.eligible_count == 4
        assert result.insufficient is False

    async def test_multiple_unique_winners(self, make_resolver: ResolverFactory) -> None:
        """Pick multiple distinct winners."""
        rules = CommentRules(num_winners=3)
        result = await select_winners(_comments(10), rules, make_resolver({}), rng=random.Random(7))

        assert len(result.winners) == 3
        assert len({w.id for w in result.winners}) == 3

    async def test_winner_count_clamped(self, make_resolver: ResolverFactory) -> None:
        """Return every eligible comment when fewer are eligible than requested."""
        rules = CommentRules(num_winners=5)
        result = await select_winners(_comments(2), rules, make_resolver({}), rng=random.Random(0))

        assert len(result.winners) == 2
        assert result.requested_winners == 5
        assert result.insufficient is True

    async def test_no_eligible_comments(self, make_resolver: ResolverFactory) -> None:
        """Raise NoEligibleCommentsError when nothing survives filtering."""
        comments = [Comment(id="1", text="no mentions", username="a")]
        rules = CommentRules(num_mentions=1)

        with pytest.raises(NoEligibleCommentsError, match="No comments meet"):
            await select_winners(comments, rules, make_resolver({}))

    async def test_empty_input(self, make_resolver: ResolverFactory) -> None:
        """Raise NoEligibleCommentsError for an empty comment list."""
        with pytest.raises(NoEligibleCommentsError):
            await select_winners([], CommentRules(), make_resolver({}))

    async def test_winners_get_usernames_backfilled(self, make_resolver: ResolverFactory) -> None:
        """Resolve usernames of winners drawn with repeats allowed."""
        comments = [Comment(id="1", text="hi"), Comment(id="2", text="hey")]
        rules = CommentRules(num_winners=2, allow_repeats=True)

        result = await select_winners(comments, rules, make_resolver({"1": "one", "2": "two"}))

        assert {w.username for w in result.winners} == {"one", "two"}

    async def test_seeded_draw_is_reproducible(self, make_resolver: ResolverFactory) -> None:
        """The same seed produces the same winners."""
        rules = CommentRules(num_winners=3)
        first = await select_winners(_comments(20), rules, make_resolver({}), rng=random.Random(99))
        second = await select_winners(_comments(20), rules, make_resolver({}), rng=random.Random(99))
        assert [w.id for w in first.winners] == [w.id for w in second.winners]


# ---------------------------------------------------------------------------
# redraw_winner / replace_winner
# ---------------------------------------------------------------------------


class TestRedrawWinner:
    """Tests for redrawing a single winner."""

    async def test_never_returns_current_winner(self, make_resolver: ResolverFactory) -> None:
        """The replacement is never one of the current winners."""
        eligible = _comments(6)
        winners = eligible[:3]
        rng = random.Random(5)

        for _ in range(50):
            new_winner = await redraw_winner(winners, eligible, winners[0].id, make_resolver({}), rng=rng)
            assert new_winner.id not in {w.id for w in winners}

    async def test_no_remaining_eligible(self, make_resolver: ResolverFactory) -> None:
        """Raise once every eligible comment is already a winner."""
        eligible = _comments(2)

        with pytest.raises(NoRemainingEligibleError):
            await redraw_winner(eligible, eligible, "c0", make_resolver({}))

    async def test_eligible_not_mutated(self, make_resolver: ResolverFactory) -> None:
        """Leave the stored eligible list unchanged."""
        eligible = _comments(4)
        snapshot = list(eligible)

        await redraw_winner(eligible[:1], eligible, "c0", make_resolver({}))

        assert eligible == snapshot

    async def test_unknown_winner(self, make_resolver: ResolverFactory) -> None:
        """Raise WinnerNotFoundError for an ID that is not a current winner."""
        eligible = _comments(3)
        with pytest.raises(WinnerNotFoundError):
            await redraw_winner(eligible[:1], eligible, "nope", make_resolver({}))

    async def test_backfills_new_winner(self, make_resolver: ResolverFactory) -> None:
        """Resolve the username of the replacement if it is missing."""
        eligible = [Comment(id="a", text="x", username="alice"), Comment(id="b", text="y")]

        new_winner = await redraw_winner(eligible[:1], eligible, "a", make_resolver({"b": "bob"}))

        assert new_winner.id == "b"
        assert new_winner.username == "bob"

    async def test_repeated_redraws_shrink_pool(self, make_resolver: ResolverFactory) -> None:
        """Replacing winners one by one eventually exhausts the pool."""
        eligible = _comments(3)
        winners = [eligible[0]]

        for _ in range(2):
            new_winner = await redraw_winner(winners, eligible, winners[0].id, make_resolver({}))
            winners = [*winners, new_winner]

        with pytest.raises(NoRemainingEligibleError):
            await redraw_winner(winners, eligible, winners[0].id, make_resolver({}))

    def test_replace_winner_in_place(self) -> None:
        """Swap the replaced winner while keeping positions."""
        winners = _comments(3)
        new_winner = Comment(id="new", text="hello", username="newbie")

        updated = replace_winner(winners, "c1", new_winner)

        assert [w.id for w in updated] == ["c0", "new", "c2"]
