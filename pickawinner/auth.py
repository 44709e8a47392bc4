"""Instagram OAuth flow and session helpers.

Login is the standard three-step Instagram API flow: redirect to the
authorization URL, exchange the returned code for a short-lived token, then
trade that for a long-lived token. The token and user ID are kept in the
signed session cookie managed by Starlette's ``SessionMiddleware``.
"""

import logging
import secrets
import time
from dataclasses import dataclass
from typing import Any
from urllib.parse import urlencode

import httpx
from fastapi import HTTPException, Request

from pickawinner.config import Settings
from pickawinner.errors import ErrorKind

logger = logging.getLogger(__name__)

SESSION_COOKIE_NAME = "pickawinner-ig-session"

OAUTH_SCOPES = ("instagram_business_basic", "instagram_business_manage_comments")

# An OAuth state older than this is rejected by the callback.
OAUTH_STATE_TTL_SECONDS = 10 * 60

# Session keys
ACCESS_TOKEN_KEY = "ig_access_token"
USER_ID_KEY = "ig_user_id"
USERNAME_KEY = "ig_username"
PROFILE_PICTURE_KEY = "ig_profile_picture"
OAUTH_STATE_KEY = "oauth_state"
OAUTH_STATE_ISSUED_AT_KEY = "oauth_state_issued_at"


class OAuthError(Exception):
    """Raised when any step of the Instagram OAuth flow fails.

    The message is safe to show to the user.
    """


@dataclass(frozen=True, slots=True)
class AuthContext:
    """Read-only credentials of the logged-in account.

    Attributes:
        access_token: Long-lived Instagram access token.
        user_id: Instagram user ID of the account owner.
    """

    access_token: str
    user_id: str


def new_oauth_state() -> str:
    """Return a fresh random value for the OAuth ``state`` parameter."""
    return secrets.token_hex(16)


def build_authorization_url(settings: Settings, state: str) -> str:
    """Build the Instagram authorization URL the browser is sent to.

    Raises:
        OAuthError: If the Instagram client ID or redirect URI is not configured.
    """
    if not settings.instagram_client_id or not settings.instagram_redirect_uri:
        raise OAuthError("Server configuration error.")

    params = {
        "client_id": settings.instagram_client_id,
        "redirect_uri": settings.instagram_redirect_uri,
        "response_type": "code",
        "scope": ",".join(OAUTH_SCOPES),
        "state": state,
        "enable_fb_login": "0",
        "force_authentication": "1",
    }
    return f"{settings.oauth_authorize_url}?{urlencode(params)}"


def remember_oauth_state(session: dict[str, Any], state: str) -> None:
    session[OAUTH_STATE_KEY] = state
    session[OAUTH_STATE_ISSUED_AT_KEY] = time.time()


def pop_oauth_state(session: dict[str, Any]) -> str | None:
    """Remove the pending OAuth state from the session and return it.

    Returns None when there is no state or it has expired.
    """
    state = session.pop(OAUTH_STATE_KEY, None)
    issued_at = session.pop(OAUTH_STATE_ISSUED_AT_KEY, None)
    if state is None or issued_at is None:
        return None
    if time.time() - float(issued_at) > OAUTH_STATE_TTL_SECONDS:
        logger.info("Discarding expired OAuth state")
        return None
    return str(state)


def _error_message(payload: Any, default: str) -> str:
    """Pull a readable message out of an Instagram OAuth error payload."""
    if not isinstance(payload, dict):
        return default
    error = payload.get("error")
    if isinstance(error, dict) and error.get("message"):
        return str(error["message"])
    if payload.get("error_message"):
        return str(payload["error_message"])
    return default


async def exchange_code_for_token(http: httpx.AsyncClient, settings: Settings, code: str) -> tuple[str, str]:
    """Exchange an authorization code for a short-lived access token.

    Returns:
        A tuple of ``(short_lived_token, user_id)``.

    Raises:
        OAuthError: If the exchange fails or the response lacks the token or user ID.
    """
    if not settings.oauth_configured:
        raise OAuthError("Server configuration error.")

    form = {
        "client_id": settings.instagram_client_id,
        "client_secret": settings.instagram_client_secret,
        "grant_type": "authorization_code",
        "redirect_uri": settings.instagram_redirect_uri,
        # Instagram appends "#_" to the code in the redirect.
        "code": code.removesuffix("#_"),
    }
    try:
        response = await http.post(settings.oauth_token_url, data=form)
        payload = response.json()
    except (httpx.HTTPError, ValueError) as exc:
        raise OAuthError(f"Token exchange failed: {exc}") from exc

    logger.info("Instagram token exchange response status: %d", response.status_code)
    if (
        not response.is_success
        or not isinstance(payload, dict)
        or not payload.get("access_token")
        or not payload.get("user_id")
    ):
        message = _error_message(payload, "Unknown token exchange error")
        logger.error("Failed to exchange code for token: %s", message)
        raise OAuthError(f"Token exchange failed: {message}")

    return str(payload["access_token"]), str(payload["user_id"])


async def exchange_for_long_lived_token(http: httpx.AsyncClient, settings: Settings, short_lived_token: str) -> str:
    """Trade a short-lived access token for a long-lived one.

    Raises:
        OAuthError: If Instagram rejects the exchange.
    """
    params = {
        "grant_type": "ig_exchange_token",
        "client_secret": settings.instagram_client_secret or "",
        "access_token": short_lived_token,
    }
    try:
        response = await http.get(f"{settings.graph_api_base_url.rstrip('/')}/access_token", params=params)
        payload = response.json()
    except (httpx.HTTPError, ValueError) as exc:
        raise OAuthError(f"Long-lived token exchange failed: {exc}") from exc

    logger.info("Instagram long-lived token exchange response status: %d", response.status_code)
    if not response.is_success or not isinstance(payload, dict) or not payload.get("access_token"):
        message = _error_message(payload, "Unknown long-lived token error")
        logger.error("Failed to exchange for long-lived token: %s", message)
        raise OAuthError(f"Long-lived token exchange failed: {message}")

    return str(payload["access_token"])


def get_auth_context(request: Request) -> AuthContext:
    """FastAPI dependency returning the logged-in account's credentials.

    Raises:
        HTTPException 401: If the session has no access token or user ID.
    """
    access_token = request.session.get(ACCESS_TOKEN_KEY)
    user_id = request.session.get(USER_ID_KEY)
    if not access_token or not user_id:
        raise HTTPException(
            status_code=401,
            detail={"kind": ErrorKind.UNAUTHENTICATED.value, "message": "Unauthorized"},
        )
    return AuthContext(access_token=access_token, user_id=str(user_id))
