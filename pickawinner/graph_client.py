"""Instagram Graph API client.

Wraps the handful of Graph API endpoints the picker needs: paginated
comments on a post, single-comment lookups (used to backfill missing
usernames), the owner's media listing and profile. Upstream failures are
converted into the exceptions defined here.
"""

import asyncio
import logging
import re
from typing import Any

import httpx

from pickawinner.models import (
    Comment,
    CommentDetails,
    CommentPage,
    FoundPost,
    MediaItem,
    MediaPage,
    UserProfile,
)

logger = logging.getLogger(__name__)

DEFAULT_GRAPH_API_BASE_URL = "https://graph.instagram.com"

COMMENT_PAGE_SIZE = 50
_COMMENT_FIELDS = "id,text,timestamp,username,user{id,profile_picture_url}"
_COMMENT_DETAIL_FIELDS = "id,text,timestamp,from"
_MEDIA_LIST_FIELDS = "id,caption,media_type,media_url,thumbnail_url,permalink,shortcode,timestamp"
_MEDIA_SEARCH_FIELDS = "id,shortcode,media_url,thumbnail_url,caption,media_type,timestamp,like_count,comments_count"
_PROFILE_FIELDS = "id,username,profile_picture_url"

# Owned-media search walks at most this many pages of this size.
_MEDIA_SEARCH_PAGE_SIZE = 100
_MEDIA_SEARCH_MAX_PAGES = 5

# Retry settings for transient Graph API errors ("An unexpected error has
# occurred. Please retry your request later.").
_MAX_RETRIES = 3
_INITIAL_BACKOFF_SECONDS = 2.0
_BACKOFF_MULTIPLIER = 2.0

_TRANSIENT_ERROR_CODES = frozenset({1, 2})
_RATE_LIMIT_ERROR_CODES = frozenset({4, 17, 32, 613})

# Matches the path of Instagram post URLs and captures the shortcode.
# Supports /p/, /reel/, and /tv/ URL formats.
_POST_PATH_PATTERN = re.compile(r"^https?://(?:www\.)?instagram\.com/(?:p|reel|tv)/([A-Za-z0-9_-]+)")


class GraphAPIError(Exception):
    """Raised when the Graph API reports an error or cannot be reached.

    Attributes:
        message: Human-readable error message from Instagram (or the transport).
        code: Graph API error code, the HTTP status when no code was given,
            or 0 for transport failures.
        transient: Whether Instagram flagged the error as safe to retry.
    """

    def __init__(self, message: str, code: int = 0, *, transient: bool = False) -> None:
        super().__init__(message)
        self.message = message
        self.code = code
        self.transient = transient


class RateLimitError(GraphAPIError):
    """Raised when Instagram throttles the app or the user.

    Wait a few minutes before retrying.
    """


class InvalidURLError(ValueError):
    """Raised when a URL is not an Instagram post URL.

    Provide a URL in the format: https://www.instagram.com/p/<shortcode>/
    """


def extract_shortcode(url: str) -> str:
    """Extract the post shortcode from an Instagram URL.

    Args:
        url: Full Instagram post URL (supports /p/, /reel/, /tv/ paths).

    Returns:
        The shortcode identifying the post.

    Raises:
        InvalidURLError: If the URL does not match any known Instagram post format.
    """
    match = _POST_PATH_PATTERN.match(url.strip())
    if not match:
        raise InvalidURLError(
            f"Could not extract shortcode from URL: {url!r}. Expected format: https://www.instagram.com/p/<shortcode>/"
        )
    return match.group(1)


def _error_from_response(response: httpx.Response, payload: Any) -> GraphAPIError:
    """Build the matching GraphAPIError for a failed Graph API response."""
    error = payload.get("error") if isinstance(payload, dict) else None
    if isinstance(error, dict):
        message = error.get("message") or f"Instagram API error (Status: {response.status_code})"
        try:
            code = int(error.get("code") or response.status_code)
        except (TypeError, ValueError):
            code = response.status_code
        transient = bool(error.get("is_transient")) or code in _TRANSIENT_ERROR_CODES
    else:
        message = f"Instagram API error (Status: {response.status_code})"
        code = response.status_code
        transient = response.status_code >= 500

    if code in _RATE_LIMIT_ERROR_CODES or response.status_code == 429:
        return RateLimitError(message, code)
    return GraphAPIError(message, code, transient=transient)


# Signals a successful response whose payload does not have the expected shape.
_PARSE_ERRORS = (KeyError, TypeError, ValueError, AttributeError)


def _malformed_response(path: str, exc: Exception) -> GraphAPIError:
    logger.error("Malformed Instagram API response on %s: %r", path, exc)
    return GraphAPIError(f"Malformed response from Instagram: {exc!r}")


def _parse_comment(raw: dict[str, Any]) -> Comment:
    user = raw.get("user") or {}
    return Comment(
        id=str(raw["id"]),
        text=raw.get("text"),
        timestamp=raw.get("timestamp"),
        username=raw.get("username"),
        profile_picture_url=user.get("profile_picture_url"),
    )


def _to_found_post(item: dict[str, Any]) -> FoundPost:
    """Convert a media search hit into a FoundPost.

    Videos are displayed through their thumbnail; every other media type
    uses ``media_url``.
    """
    if item.get("media_type") == "VIDEO" and item.get("thumbnail_url"):
        display_url = item["thumbnail_url"]
    else:
        display_url = item.get("media_url") or ""

    return FoundPost(
        id=str(item["id"]),
        display_url=display_url,
        caption=item.get("caption"),
        timestamp=item.get("timestamp"),
        like_count=item.get("like_count") or 0,
        comments_count=item.get("comments_count") or 0,
        shortcode=item.get("shortcode"),
    )


class InstagramGraphClient:
    """Graph API client bound to one user's access token.

    The underlying ``httpx.AsyncClient`` is owned by the caller and shared
    across requests; this object only adds the token and error handling.
    """

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        access_token: str,
        base_url: str = DEFAULT_GRAPH_API_BASE_URL,
        page_size: int = COMMENT_PAGE_SIZE,
    ) -> None:
        self._http = http_client
        self._access_token = access_token
        self._base_url = base_url.rstrip("/")
        self._page_size = page_size

    # -- internal helpers ----------------------------------------------------

    async def _get(self, path: str, params: dict[str, Any]) -> dict[str, Any]:
        """GET a Graph API path, retrying transient errors with backoff.

        Raises:
            RateLimitError: If Instagram throttles the request.
            GraphAPIError: For any other upstream or transport failure.
        """
        url = f"{self._base_url}/{path.lstrip('/')}"
        query = {**params, "access_token": self._access_token}

        for attempt in range(1, _MAX_RETRIES + 1):
            try:
                response = await self._http.get(url, params=query)
            except httpx.HTTPError as exc:
                raise GraphAPIError(f"Network error calling Instagram: {exc}") from exc

            try:
                payload = response.json()
            except ValueError:
                payload = None

            if response.is_success and isinstance(payload, dict) and "error" not in payload:
                return payload

            error = _error_from_response(response, payload)
            if not error.transient or attempt == _MAX_RETRIES:
                logger.error("Instagram API error on %s: %s (code %d)", path, error.message, error.code)
                raise error

            backoff = _INITIAL_BACKOFF_SECONDS * (_BACKOFF_MULTIPLIER ** (attempt - 1))
            logger.warning(
                "Transient Instagram API error on %s (attempt %d/%d): %s. Retrying in %.1fs…",
                path,
                attempt,
                _MAX_RETRIES,
                error.message,
                backoff,
            )
            await asyncio.sleep(backoff)

        raise AssertionError("unreachable")  # pragma: no cover

    # -- comments ------------------------------------------------------------

    async def fetch_comments_page(self, media_id: str, after: str | None = None) -> CommentPage:
        """Fetch one page of comments on a post.

        Args:
            media_id: Graph API ID of the post.
            after: Cursor returned by the previous page, if any.

        Returns:
            The page's comments in upstream order and the next cursor.
        """
        params: dict[str, Any] = {"fields": _COMMENT_FIELDS, "limit": self._page_size}
        if after:
            params["after"] = after

        path = f"{media_id}/comments"
        data = await self._get(path, params)
        try:
            comments = [_parse_comment(raw) for raw in data.get("data") or []]
            next_cursor = ((data.get("paging") or {}).get("cursors") or {}).get("after")
        except _PARSE_ERRORS as exc:
            raise _malformed_response(path, exc) from exc

        logger.debug(
            "Fetched %d comments for media %s (next cursor: %s)",
            len(comments),
            media_id,
            "present" if next_cursor else "none",
        )
        return CommentPage(comments=comments, next_cursor=next_cursor)

    async def fetch_comment_details(self, comment_id: str) -> CommentDetails:
        """Look up a single comment, including its author."""
        data = await self._get(comment_id, {"fields": _COMMENT_DETAIL_FIELDS})
        try:
            return CommentDetails.model_validate(data)
        except _PARSE_ERRORS as exc:
            raise _malformed_response(comment_id, exc) from exc

    async def resolve_username(self, comment_id: str) -> str | None:
        """Return the username of a comment's author, or None if unavailable.

        Never raises for upstream failures: a failed lookup only means this
        one comment stays without a username.
        """
        try:
            details = await self.fetch_comment_details(comment_id)
        except GraphAPIError as exc:
            logger.warning("Could not fetch username for comment %s: %s", comment_id, exc.message)
            return None

        if details.from_user is None or not details.from_user.username:
            logger.warning("Comment %s has no author username", comment_id)
            return None
        return details.from_user.username

    # -- media ---------------------------------------------------------------

    async def list_media(self, user_id: str, limit: int = 4, after: str | None = None) -> MediaPage:
        """Fetch one page of the user's own media."""
        params: dict[str, Any] = {"fields": _MEDIA_LIST_FIELDS, "limit": limit}
        if after:
            params["after"] = after

        path = f"{user_id}/media"
        data = await self._get(path, params)
        try:
            cursors = (data.get("paging") or {}).get("cursors") or {}
            return MediaPage(
                posts=[MediaItem.model_validate(item) for item in data.get("data") or []],
                after=cursors.get("after"),
                before=cursors.get("before"),
            )
        except _PARSE_ERRORS as exc:
            raise _malformed_response(path, exc) from exc

    async def find_post_by_shortcode(self, user_id: str, shortcode: str) -> FoundPost | None:
        """Search the user's own media for a post with the given shortcode.

        Only owned media is searched, so collab posts owned by another
        account are not found.

        Returns:
            The matching post, or None when it is not among the first
            pages of owned media.
        """
        after: str | None = None
        for page_number in range(1, _MEDIA_SEARCH_MAX_PAGES + 1):
            params: dict[str, Any] = {"fields": _MEDIA_SEARCH_FIELDS, "limit": _MEDIA_SEARCH_PAGE_SIZE}
            if after:
                params["after"] = after

            logger.debug("Searching owned media page %d for shortcode %s", page_number, shortcode)
            path = f"{user_id}/media"
            data = await self._get(path, params)

            try:
                for item in data.get("data") or []:
                    if item.get("shortcode") == shortcode:
                        logger.info("Found post %s for shortcode %s", item.get("id"), shortcode)
                        return _to_found_post(item)

                after = ((data.get("paging") or {}).get("cursors") or {}).get("after")
            except _PARSE_ERRORS as exc:
                raise _malformed_response(path, exc) from exc
            if not after:
                break

        logger.info("Shortcode %s not found in owned media", shortcode)
        return None

    # -- profile -------------------------------------------------------------

    async def fetch_profile(self) -> UserProfile:
        """Fetch the profile of the account that owns the access token."""
        data = await self._get("me", {"fields": _PROFILE_FIELDS})
        try:
            return UserProfile(
                id=str(data["id"]),
                username=data["username"],
                profile_picture_url=data.get("profile_picture_url"),
            )
        except _PARSE_ERRORS as exc:
            raise _malformed_response("me", exc) from exc
