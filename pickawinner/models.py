"""Pydantic models for comments, rules and the Pick a Winner API payloads."""

from pydantic import BaseModel, ConfigDict, Field


class Comment(BaseModel):
    """A single comment on an Instagram post.

    ``username`` can be missing depending on the fetch path; it is then
    backfilled by a per-comment lookup keyed on ``id``.
    """

    id: str = Field(min_length=1, description="Comment ID, unique within a post")
    text: str | None = Field(default=None, description="Comment body")
    timestamp: str | None = Field(default=None, description="ISO-8601 creation time")
    username: str | None = Field(default=None, description="Commenter handle (without @)")
    profile_picture_url: str | None = Field(default=None, description="Commenter avatar URL")


class CommentRules(BaseModel):
    """Eligibility and draw configuration chosen by the account owner.

    Accepts both snake_case and the camelCase names used by the web client.
    """

    model_config = ConfigDict(populate_by_name=True)

    num_winners: int = Field(default=1, ge=1, alias="numWinners", description="How many winners to draw")
    num_mentions: int = Field(
        default=0,
        ge=0,
        alias="numMentions",
        description="Minimum number of @mentions a comment must contain",
    )
    allow_repeats: bool = Field(
        default=False,
        alias="allowRepeats",
        description="Whether one user may win with more than one comment",
    )


class FoundPost(BaseModel):
    """An owned post located by its URL shortcode."""

    id: str
    display_url: str = ""
    caption: str | None = None
    timestamp: str | None = None
    like_count: int = 0
    comments_count: int = 0
    shortcode: str | None = None


class MediaItem(BaseModel):
    """One entry of the owner's media listing."""

    id: str
    caption: str | None = None
    media_type: str | None = None
    media_url: str | None = None
    thumbnail_url: str | None = None
    permalink: str | None = None
    shortcode: str | None = None
    timestamp: str | None = None


class MediaPage(BaseModel):
    """A page of owned media plus its pagination cursors."""

    posts: list[MediaItem] = Field(default_factory=list)
    after: str | None = None
    before: str | None = None


class CommentPage(BaseModel):
    """One page of comments returned by the upstream comment source."""

    comments: list[Comment] = Field(default_factory=list)
    next_cursor: str | None = Field(default=None, description="Cursor for the following page, if any")


class CommentAuthor(BaseModel):
    """The ``from`` object of a comment-details lookup."""

    id: str
    username: str | None = None


class CommentDetails(BaseModel):
    """Result of looking up a single comment by ID."""

    model_config = ConfigDict(populate_by_name=True)

    id: str
    text: str | None = None
    timestamp: str | None = None
    from_user: CommentAuthor | None = Field(default=None, alias="from")


class UserProfile(BaseModel):
    """Profile of the logged-in Instagram account."""

    id: str
    username: str
    profile_picture_url: str | None = None


class Commenter(BaseModel):
    """Minimal commenter preview shown while comments are loading."""

    username: str | None = None
    profile_picture_url: str | None = None


class CollectionProgress(BaseModel):
    """Progress emitted after each fetched comment page."""

    page_number: int = Field(ge=1)
    page_count: int = Field(ge=0, description="Comments received on this page")
    total_count: int = Field(ge=0, description="Comments accumulated so far")
    first_commenter: Commenter | None = None


class CollectionResult(BaseModel):
    """All comments gathered for one post.

    ``incomplete`` is set when the page ceiling stopped collection while the
    upstream still reported more pages.
    """

    comments: list[Comment]
    pages_fetched: int = Field(ge=0)
    incomplete: bool = False


class SelectionResult(BaseModel):
    """Outcome of a winner draw.

    ``insufficient`` is set when fewer comments were eligible than winners
    were requested; ``winners`` then holds every eligible comment.
    """

    eligible: list[Comment]
    winners: list[Comment]
    eligible_count: int = Field(ge=0)
    requested_winners: int = Field(ge=1)
    insufficient: bool = False


# ---------------------------------------------------------------------------
# API request/response bodies
# ---------------------------------------------------------------------------


class AuthStartResponse(BaseModel):
    """Response body returned by /api/auth/start."""

    authorization_url: str = Field(description="Instagram authorization URL to redirect the browser to")


class SessionResponse(BaseModel):
    """Response body returned by /api/auth/session."""

    is_logged_in: bool
    user: UserProfile | None = None


class PickWinnersRequest(BaseModel):
    """Request body for the /api/pick-winners endpoint.

    The comments are collected server-side for ``media_id`` and the
    rules are applied at the moment the request arrives.
    """

    media_id: str = Field(description="ID of the post to draw winners from")
    rules: CommentRules = Field(default_factory=CommentRules)


class PickWinnersResponse(BaseModel):
    """Response body returned by /api/pick-winners.

    The ``eligible`` list is sent back by the client on redraw requests.
    """

    winners: list[Comment]
    eligible: list[Comment]
    eligible_count: int = Field(ge=0)
    total_comments: int = Field(ge=0)
    requested_winners: int = Field(ge=1)
    insufficient: bool = Field(description="Fewer eligible comments than requested winners")
    incomplete: bool = Field(description="Comment collection stopped at the page limit")


class RedrawRequest(BaseModel):
    """Request body for the /api/redraw endpoint."""

    current_winners: list[Comment] = Field(min_length=1)
    eligible: list[Comment]
    winner_id: str = Field(description="ID of the winning comment to replace")


class RedrawResponse(BaseModel):
    """Response body returned by /api/redraw."""

    winner: Comment = Field(description="The newly drawn winner")
    winners: list[Comment] = Field(description="Winners list with the replacement applied in place")
