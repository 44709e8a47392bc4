"""Winner selection logic for Instagram comment giveaways.

Filters the collected comments by the giveaway rules, backfills missing
usernames, and draws winners uniformly at random without replacement.
"""

import asyncio
import logging
import random
import re
from collections.abc import Awaitable, Callable, Sequence

from pickawinner.errors import ErrorKind, PickerError
from pickawinner.models import Comment, CommentRules, SelectionResult

logger = logging.getLogger(__name__)

USERNAME_BATCH_SIZE = 5

# "@" followed by one or more non-whitespace characters.
_MENTION_PATTERN = re.compile(r"@\S+")

UsernameResolver = Callable[[str], Awaitable[str | None]]


class SelectionError(PickerError):
    """Base exception for winner-selection failures."""


class NoEligibleCommentsError(SelectionError):
    """Raised when no comment survives the eligibility rules.

    Relax the rules (fewer required mentions, or allow repeat users)
    and draw again.
    """

    kind = ErrorKind.NO_ELIGIBLE_COMMENTS


class NoRemainingEligibleError(SelectionError):
    """Raised when a redraw is requested but every eligible comment already won."""

    kind = ErrorKind.NO_REMAINING_ELIGIBLE


class WinnerNotFoundError(SelectionError):
    """Raised when the winner to replace is not among the current winners."""

    kind = ErrorKind.WINNER_NOT_FOUND


def count_mentions(text: str) -> int:
    """Return the number of non-overlapping ``@handle`` tokens in ``text``."""
    return len(_MENTION_PATTERN.findall(text))


def draw_random(pool: Sequence[Comment], count: int, rng: random.Random | None = None) -> list[Comment]:
    """Draw ``count`` distinct comments uniformly at random.

    Performs a Fisher-Yates shuffle over a copy of ``pool`` and returns the
    first ``count`` items, so every comment has the same chance of being
    drawn regardless of its position. ``pool`` itself is not modified.
    """
    rng = rng or random.SystemRandom()
    shuffled = list(pool)
    for i in range(len(shuffled) - 1, 0, -1):
        j = rng.randint(0, i)
        shuffled[i], shuffled[j] = shuffled[j], shuffled[i]
    return shuffled[:count]


async def _resolve_one(comment: Comment, resolve_username: UsernameResolver) -> Comment:
    try:
        username = await resolve_username(comment.id)
    except Exception:
        logger.exception("Username lookup failed for comment %s", comment.id)
        username = None

    if not username:
        return comment
    return comment.model_copy(update={"username": username})


async def backfill_usernames(
    comments: Sequence[Comment],
    resolve_username: UsernameResolver,
    batch_size: int = USERNAME_BATCH_SIZE,
) -> list[Comment]:
    """Fill in missing usernames by looking each comment up by ID.

    Comments that already have a username are never looked up. Lookups run
    concurrently within a batch of ``batch_size``; the next batch starts only
    after the previous one has finished. A failed lookup leaves that one
    comment without a username and does not affect the others.

    Returns:
        A new list in the same order; input comments are not mutated.
    """
    if batch_size < 1:
        raise ValueError("batch_size must be at least 1")

    result = list(comments)
    missing = [index for index, comment in enumerate(result) if not comment.username]
    if not missing:
        return result

    logger.info("Resolving usernames for %d comment(s) in batches of %d", len(missing), batch_size)
    for start in range(0, len(missing), batch_size):
        batch = missing[start : start + batch_size]
        resolved = await asyncio.gather(*(_resolve_one(result[index], resolve_username) for index in batch))
        for index, comment in zip(batch, resolved, strict=True):
            result[index] = comment

    return result


async def filter_eligible_comments(
    comments: Sequence[Comment],
    rules: CommentRules,
    resolve_username: UsernameResolver,
    batch_size: int = USERNAME_BATCH_SIZE,
) -> list[Comment]:
    """Return the comments that satisfy the giveaway rules, in original order.

    Args:
        comments: Every collected comment on the post.
        rules: The account owner's eligibility rules.
        resolve_username: Lookup used for comments missing a username.
        batch_size: Concurrent username lookups per batch.

    Returns:
        Comments with non-empty text and at least ``rules.num_mentions``
        mentions. Unless ``rules.allow_repeats`` is set, only the first
        comment of each username is kept and comments whose username could
        not be resolved are excluded.
    """
    eligible = [comment for comment in comments if comment.text]

    if rules.num_mentions > 0:
        eligible = [comment for comment in eligible if count_mentions(comment.text or "") >= rules.num_mentions]
        logger.info("After mention filter (%d): %d comments", rules.num_mentions, len(eligible))

    if not rules.allow_repeats:
        with_usernames = await backfill_usernames(eligible, resolve_username, batch_size)

        seen_usernames: set[str] = set()
        eligible = []
        for comment in with_usernames:
            if not comment.username:
                logger.info("Excluding comment %s: username could not be resolved", comment.id)
                continue
            if comment.username in seen_usernames:
                continue
            seen_usernames.add(comment.username)
            eligible.append(comment)
        logger.info("After unique user filter: %d comments", len(eligible))

    return eligible


async def select_winners(
    comments: Sequence[Comment],
    rules: CommentRules,
    resolve_username: UsernameResolver,
    rng: random.Random | None = None,
    batch_size: int = USERNAME_BATCH_SIZE,
) -> SelectionResult:
    """Filter comments by the rules and draw the winners.

    Draws ``min(rules.num_winners, eligible_count)`` winners; a shortfall is
    reported through ``SelectionResult.insufficient`` rather than an error.

    Raises:
        NoEligibleCommentsError: If no comment meets the rules.
    """
    logger.info("Applying rules to %d comments", len(comments))
    eligible = await filter_eligible_comments(comments, rules, resolve_username, batch_size)

    if not eligible:
        raise NoEligibleCommentsError("No comments meet the specified criteria after filtering.")

    num_winners = min(rules.num_winners, len(eligible))
    if num_winners < rules.num_winners:
        logger.warning(
            "Only %d eligible comment(s) for %d requested winner(s)",
            len(eligible),
            rules.num_winners,
        )

    winners = draw_random(eligible, num_winners, rng)
    winners = await backfill_usernames(winners, resolve_username, batch_size)

    logger.info("Selected %d winner(s) from %d eligible comments", len(winners), len(eligible))
    return SelectionResult(
        eligible=eligible,
        winners=winners,
        eligible_count=len(eligible),
        requested_winners=rules.num_winners,
        insufficient=num_winners < rules.num_winners,
    )


async def redraw_winner(
    current_winners: Sequence[Comment],
    eligible: Sequence[Comment],
    winner_to_replace: str,
    resolve_username: UsernameResolver,
    rng: random.Random | None = None,
    batch_size: int = USERNAME_BATCH_SIZE,
) -> Comment:
    """Draw a replacement for one winner from the eligible comments not yet drawn.

    Args:
        current_winners: The winners currently shown.
        eligible: The eligible set from the original draw; not modified.
        winner_to_replace: Comment ID of the winner being replaced.
        resolve_username: Lookup used if the new winner lacks a username.
        batch_size: Concurrent username lookups per batch.

    Returns:
        The newly drawn winner.

    Raises:
        WinnerNotFoundError: If ``winner_to_replace`` is not a current winner.
        NoRemainingEligibleError: If every eligible comment is already a winner.
    """
    winner_ids = {winner.id for winner in current_winners}
    if winner_to_replace not in winner_ids:
        raise WinnerNotFoundError(f"Comment {winner_to_replace!r} is not one of the current winners.")

    pool = [comment for comment in eligible if comment.id not in winner_ids]
    if not pool:
        raise NoRemainingEligibleError("No more eligible comments available for redraw.")

    [new_winner] = draw_random(pool, 1, rng)
    [new_winner] = await backfill_usernames([new_winner], resolve_username, batch_size)

    logger.info("Redrew winner %s -> %s (%d remaining in pool)", winner_to_replace, new_winner.id, len(pool) - 1)
    return new_winner


def replace_winner(current_winners: Sequence[Comment], winner_id: str, new_winner: Comment) -> list[Comment]:
    """Return the winners list with ``winner_id`` swapped for ``new_winner`` in place."""
    return [new_winner if winner.id == winner_id else winner for winner in current_winners]
