"""FastAPI application for Pick a Winner, the Instagram comment giveaway picker.

Exposes API endpoints for Instagram OAuth login/logout, locating one of the
account's own posts, fetching its comments, and drawing and redrawing
random giveaway winners.
"""

import json
import logging
import secrets
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Annotated, Any
from urllib.parse import urlencode

import httpx
from fastapi import Depends, FastAPI, HTTPException, Query, Request
from fastapi.responses import RedirectResponse, StreamingResponse

from pickawinner.auth import (
    ACCESS_TOKEN_KEY,
    PROFILE_PICTURE_KEY,
    SESSION_COOKIE_NAME,
    USER_ID_KEY,
    USERNAME_KEY,
    AuthContext,
    OAuthError,
    build_authorization_url,
    exchange_code_for_token,
    exchange_for_long_lived_token,
    get_auth_context,
    new_oauth_state,
    pop_oauth_state,
    remember_oauth_state,
)
from pickawinner.comment_collector import (
    AlreadyInProgressError,
    CollectorError,
    CommentCollector,
    FetchFailedError,
    MissingTargetError,
)
from pickawinner.config import Settings, configure_logging, get_settings
from pickawinner.errors import PickerError
from pickawinner.graph_client import (
    GraphAPIError,
    InstagramGraphClient,
    InvalidURLError,
    RateLimitError,
    extract_shortcode,
)
from pickawinner.models import (
    AuthStartResponse,
    CommentDetails,
    CommentPage,
    FoundPost,
    MediaPage,
    PickWinnersRequest,
    PickWinnersResponse,
    RedrawRequest,
    RedrawResponse,
    SessionResponse,
    UserProfile,
)
from pickawinner.session import EncryptedSessionMiddleware
from pickawinner.winner_selector import (
    NoEligibleCommentsError,
    NoRemainingEligibleError,
    WinnerNotFoundError,
    redraw_winner,
    replace_winner,
    select_winners,
)

logger = logging.getLogger(__name__)

_settings = get_settings()


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Manage application-wide startup and shutdown resources.

    Opens the shared HTTP client used for every Instagram call and closes
    it when the application shuts down.
    """
    settings = get_settings()
    configure_logging(settings)
    app.state.http_client = httpx.AsyncClient(timeout=settings.request_timeout_seconds)
    logger.info("Started Instagram HTTP client (timeout=%.1fs)", settings.request_timeout_seconds)
    try:
        yield
    finally:
        await app.state.http_client.aclose()
        logger.info("Closed Instagram HTTP client")


app = FastAPI(
    title="Pick a Winner",
    description="Instagram Comment Giveaway Picker API",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(
    EncryptedSessionMiddleware,
    secret_key=_settings.session_secret,
    session_cookie=SESSION_COOKIE_NAME,
    same_site="lax",
    https_only=_settings.is_production,
)


# ---------------------------------------------------------------------------
# Dependencies
# ---------------------------------------------------------------------------


def get_http_client(request: Request) -> httpx.AsyncClient:
    """Return the shared HTTP client opened during lifespan startup."""
    client: httpx.AsyncClient = request.app.state.http_client
    return client


def _build_graph_client(http: httpx.AsyncClient, access_token: str, settings: Settings) -> InstagramGraphClient:
    return InstagramGraphClient(
        http,
        access_token,
        base_url=settings.graph_api_base_url,
        page_size=settings.comment_page_size,
    )


def get_graph_client(
    auth: Annotated[AuthContext, Depends(get_auth_context)],
    http: Annotated[httpx.AsyncClient, Depends(get_http_client)],
    settings: Annotated[Settings, Depends(get_settings)],
) -> InstagramGraphClient:
    """Return a Graph API client for the logged-in account.

    Refuses with 401 (via ``get_auth_context``) when nobody is logged in.
    """
    return _build_graph_client(http, auth.access_token, settings)


SettingsDep = Annotated[Settings, Depends(get_settings)]
HttpDep = Annotated[httpx.AsyncClient, Depends(get_http_client)]
AuthDep = Annotated[AuthContext, Depends(get_auth_context)]
GraphDep = Annotated[InstagramGraphClient, Depends(get_graph_client)]


def _http_error(status_code: int, exc: PickerError) -> HTTPException:
    return HTTPException(status_code=status_code, detail=exc.to_detail())


def _upstream_error(exc: GraphAPIError) -> HTTPException:
    """Map a Graph API failure to 429 (rate limit) or 502 (anything else)."""
    if isinstance(exc, RateLimitError):
        return HTTPException(status_code=429, detail=exc.message)
    return HTTPException(status_code=502, detail=exc.message)


def _collector_error(exc: CollectorError) -> HTTPException:
    """Map a collection failure to its HTTP status.

    Each request builds its own :class:`CommentCollector`, so
    ``AlreadyInProgressError`` (409) is unreachable through the endpoints
    below; the mapping covers callers that share one collector.
    """
    if isinstance(exc, MissingTargetError):
        return _http_error(400, exc)
    if isinstance(exc, AlreadyInProgressError):
        return _http_error(409, exc)
    if isinstance(exc, FetchFailedError) and isinstance(exc.__cause__, RateLimitError):
        return _http_error(429, exc)
    return _http_error(502, exc)


def _redirect_home(error: str | None = None) -> RedirectResponse:
    url = "/" if error is None else f"/?{urlencode({'error': error})}"
    return RedirectResponse(url, status_code=307)


# ---------------------------------------------------------------------------
# Auth endpoints
# ---------------------------------------------------------------------------


@app.get("/api/auth/start", response_model=AuthStartResponse)  # type: ignore[untyped-decorator]
async def api_auth_start(request: Request, settings: SettingsDep) -> AuthStartResponse:
    """Begin the Instagram OAuth flow.

    Stores a fresh random ``state`` in the session and returns the
    authorization URL the browser should navigate to.

    Raises:
        HTTPException 500: If the Instagram app credentials are not configured.
    """
    state = new_oauth_state()
    try:
        authorization_url = build_authorization_url(settings, state)
    except OAuthError as exc:
        logger.error("Missing Instagram config for auth start")
        raise HTTPException(status_code=500, detail=str(exc)) from exc

    remember_oauth_state(request.session, state)
    return AuthStartResponse(authorization_url=authorization_url)


@app.get("/api/auth/instagram/callback")  # type: ignore[untyped-decorator]
async def api_auth_callback(
    request: Request,
    settings: SettingsDep,
    http: HttpDep,
    code: str | None = None,
    state: str | None = None,
    error: str | None = None,
    error_description: str | None = None,
) -> RedirectResponse:
    """Complete the OAuth flow started by /api/auth/start.

    Validates ``state``, exchanges the code for a long-lived token, fetches
    the account profile and stores everything in the session. Always
    redirects to ``/``; failures are passed along as an ``error`` query
    parameter.
    """
    expected_state = pop_oauth_state(request.session)
    if not state or not expected_state or not secrets.compare_digest(state, expected_state):
        logger.error("Invalid OAuth state received")
        return _redirect_home("Invalid login attempt (state mismatch). Please try again.")

    if error:
        logger.error("Instagram login error: %s (%s)", error, error_description)
        return _redirect_home(error_description or "Login failed")
    if not code:
        logger.error("Missing authorization code from Instagram")
        return _redirect_home("Missing authorization code")

    try:
        short_lived_token, user_id = await exchange_code_for_token(http, settings, code)
        access_token = await exchange_for_long_lived_token(http, settings, short_lived_token)
        profile = await _build_graph_client(http, access_token, settings).fetch_profile()
    except OAuthError as exc:
        return _redirect_home(str(exc))
    except GraphAPIError as exc:
        logger.error("Failed to fetch user profile during auth: %s", exc.message)
        return _redirect_home("Could not fetch user profile data")

    request.session.update(
        {
            ACCESS_TOKEN_KEY: access_token,
            USER_ID_KEY: user_id,
            USERNAME_KEY: profile.username,
            PROFILE_PICTURE_KEY: profile.profile_picture_url,
        }
    )
    logger.info("Instagram login successful for %r", profile.username)
    return _redirect_home()


@app.get("/api/auth/session", response_model=SessionResponse)  # type: ignore[untyped-decorator]
async def api_auth_session(request: Request, settings: SettingsDep, http: HttpDep) -> SessionResponse:
    """Report whether the browser has a logged-in session.

    Uses the profile cached at login; falls back to asking Instagram when
    the session has a token but no cached username.
    """
    access_token = request.session.get(ACCESS_TOKEN_KEY)
    user_id = request.session.get(USER_ID_KEY)
    if not access_token or not user_id:
        return SessionResponse(is_logged_in=False)

    username = request.session.get(USERNAME_KEY)
    if username:
        return SessionResponse(
            is_logged_in=True,
            user=UserProfile(
                id=str(user_id),
                username=username,
                profile_picture_url=request.session.get(PROFILE_PICTURE_KEY),
            ),
        )

    logger.info("No cached profile in session, fetching from Instagram")
    try:
        profile = await _build_graph_client(http, access_token, settings).fetch_profile()
    except GraphAPIError as exc:
        logger.error("Failed to fetch Instagram profile: %s", exc.message)
        return SessionResponse(is_logged_in=False)

    request.session[USERNAME_KEY] = profile.username
    request.session[PROFILE_PICTURE_KEY] = profile.profile_picture_url
    return SessionResponse(is_logged_in=True, user=profile)


@app.post("/api/auth/logout")  # type: ignore[untyped-decorator]
async def api_auth_logout(request: Request) -> dict[str, bool]:
    """Log out by clearing the session.

    Idempotent: logging out without a session still succeeds.
    """
    request.session.clear()
    logger.info("Session cleared (logout)")
    return {"success": True}


# ---------------------------------------------------------------------------
# Media
# ---------------------------------------------------------------------------


@app.get("/api/media/list", response_model=MediaPage)  # type: ignore[untyped-decorator]
async def api_media_list(
    auth: AuthDep,
    graph: GraphDep,
    limit: Annotated[int, Query(ge=1, le=100)] = 4,
    after: str | None = None,
) -> MediaPage:
    """List the logged-in account's own posts, newest first."""
    try:
        return await graph.list_media(auth.user_id, limit=limit, after=after)
    except GraphAPIError as exc:
        raise _upstream_error(exc) from exc


@app.get("/api/media/search", response_model=FoundPost)  # type: ignore[untyped-decorator]
async def api_media_search(auth: AuthDep, graph: GraphDep, url: str) -> FoundPost:
    """Locate one of the account's own posts by its Instagram URL.

    Raises:
        HTTPException 400: If the URL is not an Instagram post URL.
        HTTPException 404: If the post is not among the account's own media.
        HTTPException 429/502: If Instagram fails the search.
    """
    try:
        shortcode = extract_shortcode(url)
    except InvalidURLError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    logger.info("Searching owned media for shortcode %s (user %s)", shortcode, auth.user_id)
    try:
        post = await graph.find_post_by_shortcode(auth.user_id, shortcode)
    except GraphAPIError as exc:
        raise _upstream_error(exc) from exc

    if post is None:
        raise HTTPException(
            status_code=404,
            detail="Post not found in your owned media. Collab posts cannot be processed directly.",
        )
    return post


# ---------------------------------------------------------------------------
# Comments
# ---------------------------------------------------------------------------


@app.get("/api/comments/list", response_model=CommentPage)  # type: ignore[untyped-decorator]
async def api_comments_list(graph: GraphDep, media_id: str, after: str | None = None) -> CommentPage:
    """Fetch a single page of comments on a post."""
    try:
        return await graph.fetch_comments_page(media_id, after)
    except GraphAPIError as exc:
        raise _upstream_error(exc) from exc


@app.get("/api/comments/details", response_model=CommentDetails)  # type: ignore[untyped-decorator]
async def api_comment_details(graph: GraphDep, comment_id: str) -> CommentDetails:
    """Look up a single comment and its author."""
    try:
        return await graph.fetch_comment_details(comment_id)
    except GraphAPIError as exc:
        raise _upstream_error(exc) from exc


def _ndjson(event: dict[str, Any]) -> str:
    return json.dumps(event) + "\n"


@app.get("/api/comments/collect")  # type: ignore[untyped-decorator]
async def api_collect_comments(graph: GraphDep, settings: SettingsDep, media_id: str) -> StreamingResponse:
    """Collect every comment on a post, streaming progress as NDJSON.

    Emits one ``progress`` event per fetched page, then either a ``done``
    event carrying all comments or an ``error`` event with the failure kind.
    """
    collector = CommentCollector(graph.fetch_comments_page, max_pages=settings.max_comment_pages)

    async def events() -> AsyncIterator[str]:
        try:
            async for progress in collector.iter_pages(media_id):
                yield _ndjson({"type": "progress", **progress.model_dump()})
        except CollectorError as exc:
            logger.error("Comment collection for %s failed: %s", media_id, exc)
            yield _ndjson({"type": "error", **exc.to_detail()})
            return

        yield _ndjson({"type": "done", **collector.result().model_dump()})

    return StreamingResponse(events(), media_type="application/x-ndjson")


# ---------------------------------------------------------------------------
# Winner selection
# ---------------------------------------------------------------------------


@app.post("/api/pick-winners", response_model=PickWinnersResponse)  # type: ignore[untyped-decorator]
async def api_pick_winners(
    request: PickWinnersRequest,
    graph: GraphDep,
    settings: SettingsDep,
) -> PickWinnersResponse:
    """Collect a post's comments and draw random winners from the eligible ones.

    Raises:
        HTTPException 400: If no post ID was given.
        HTTPException 422: If no comment meets the rules.
        HTTPException 429: If Instagram rate-limited the comment fetch.
        HTTPException 502: If any comment page failed to load.
    """
    rules = request.rules
    logger.info(
        "Received pick-winners request for media %s: %d winners, %d mentions, repeats=%s",
        request.media_id,
        rules.num_winners,
        rules.num_mentions,
        rules.allow_repeats,
    )

    collector = CommentCollector(graph.fetch_comments_page, max_pages=settings.max_comment_pages)
    try:
        collection = await collector.collect(request.media_id)
    except CollectorError as exc:
        raise _collector_error(exc) from exc

    try:
        selection = await select_winners(
            collection.comments,
            rules,
            graph.resolve_username,
            batch_size=settings.username_batch_size,
        )
    except NoEligibleCommentsError as exc:
        raise _http_error(422, exc) from exc

    logger.info("Selected winners: %s", [winner.username for winner in selection.winners])
    return PickWinnersResponse(
        winners=selection.winners,
        eligible=selection.eligible,
        eligible_count=selection.eligible_count,
        total_comments=len(collection.comments),
        requested_winners=selection.requested_winners,
        insufficient=selection.insufficient,
        incomplete=collection.incomplete,
    )


@app.post("/api/redraw", response_model=RedrawResponse)  # type: ignore[untyped-decorator]
async def api_redraw(request: RedrawRequest, graph: GraphDep, settings: SettingsDep) -> RedrawResponse:
    """Replace one winner with another eligible comment that has not won yet.

    Raises:
        HTTPException 422: If the winner is unknown or no eligible comment remains.
    """
    logger.info("Received redraw request for winner %s", request.winner_id)
    try:
        new_winner = await redraw_winner(
            request.current_winners,
            request.eligible,
            request.winner_id,
            graph.resolve_username,
            batch_size=settings.username_batch_size,
        )
    except (WinnerNotFoundError, NoRemainingEligibleError) as exc:
        raise _http_error(422, exc) from exc

    return RedrawResponse(
        winner=new_winner,
        winners=replace_winner(request.current_winners, request.winner_id, new_winner),
    )


@app.get("/api/health")  # type: ignore[untyped-decorator]
async def api_health() -> dict[str, str]:
    return {"status": "ok"}


def run() -> None:
    """Serve the application with uvicorn (``pickawinner`` console script)."""
    import uvicorn

    uvicorn.run("pickawinner.main:app", host="0.0.0.0", port=8000)
