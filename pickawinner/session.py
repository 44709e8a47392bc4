"""Encrypted cookie-backed sessions.

Starlette's ``SessionMiddleware`` only signs the cookie, leaving the
session JSON readable by anyone holding it. The access token must not be,
so the signer is swapped for a Fernet cipher and the cookie carries an
encrypted, timestamped token instead.
"""

import base64
import hashlib
import logging

from cryptography.fernet import Fernet, InvalidToken
from itsdangerous import BadSignature
from starlette.middleware.sessions import SessionMiddleware
from starlette.types import ASGIApp

logger = logging.getLogger(__name__)


def session_cipher(secret: str) -> Fernet:
    """Return the Fernet cipher derived from the session secret."""
    return Fernet(base64.urlsafe_b64encode(hashlib.sha256(secret.encode()).digest()))


class FernetSessionSigner:
    """Drop-in for the itsdangerous signer used by ``SessionMiddleware``.

    ``sign`` encrypts; ``unsign`` decrypts, enforcing ``max_age`` through the
    Fernet timestamp. Any undecryptable cookie is reported as
    :class:`itsdangerous.BadSignature`, which the middleware treats as an
    empty session.
    """

    def __init__(self, secret: str) -> None:
        self._cipher = session_cipher(secret)

    def sign(self, value: bytes) -> bytes:
        return self._cipher.encrypt(value)

    def unsign(self, value: bytes, max_age: int | None = None) -> bytes:
        try:
            return self._cipher.decrypt(value, ttl=max_age)
        except InvalidToken as exc:
            logger.info("Discarding session cookie that could not be decrypted")
            raise BadSignature("Session cookie could not be decrypted") from exc


class EncryptedSessionMiddleware(SessionMiddleware):
    """``SessionMiddleware`` whose cookie payload is encrypted with Fernet."""

    def __init__(self, app: ASGIApp, secret_key: str, **kwargs: object) -> None:
        super().__init__(app, secret_key=secret_key, **kwargs)  # type: ignore[arg-type]
        self.signer = FernetSessionSigner(secret_key)  # type: ignore[assignment]
