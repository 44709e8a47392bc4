"""Shared fixtures for Pick a Winner tests."""

import os

# Settings are read when pickawinner.main is imported.
os.environ.setdefault("SESSION_SECRET", "test-session-secret-that-is-long-enough-000")

from collections.abc import Awaitable, Callable  # noqa: E402

import pytest  # noqa: E402

from pickawinner.models import Comment  # noqa: E402


@pytest.fixture()
def sample_comments() -> list[Comment]:
    """Return a representative list of comments with mentions and repeat users."""
    return [
        Comment(id="c1", text="pick me @friend1 @friend2", username="alice"),
        Comment(id="c2", text="no mentions here", username="bob"),
        Comment(id="c3", text="@friend3", username="charlie"),
        Comment(id="c4", text="again @friend4 @friend5", username="alice"),
        Comment(id="c5", text="", username="diana"),
        Comment(id="c6", text=None, username="eve"),
        Comment(id="c7", text="@a @b @c", username="frank"),
    ]


def _make_resolver(
    usernames: dict[str, str | None],
    calls: list[str] | None = None,
) -> Callable[[str], Awaitable[str | None]]:
    """Build an async username resolver backed by a dict, recording lookups."""

    async def resolve(comment_id: str) -> str | None:
        if calls is not None:
            calls.append(comment_id)
        return usernames.get(comment_id)

    return resolve


ResolverFactory = Callable[..., Callable[[str], Awaitable[str | None]]]


@pytest.fixture()
def make_resolver() -> ResolverFactory:
    """Return a factory for dict-backed username resolvers."""
    return _make_resolver
