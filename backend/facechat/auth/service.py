"""Bearer credentials and password hashing.

``TokenService`` issues and verifies signed JWTs (PyJWT). Verification is a
pure function of the token and the signing key: no database lookups, no
side effects, so it can run on every WebSocket handshake and every request.
"""
import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

import jwt
from passlib.context import CryptContext

from ..errors import AuthError, AuthFailure
from .schemas import Identity

logger = logging.getLogger(__name__)

ACCESS = "access"
REFRESH = "refresh"

pwd_context = CryptContext(schemes=["pbkdf2_sha256"], deprecated="auto")


class PasswordHasher:
    """Hashes and verifies account passwords."""

    def hash(self, password: str) -> str:
        return pwd_context.hash(password)

    def verify(self, password: str, hashed: str) -> bool:
        try:
            return pwd_context.verify(password, hashed)
        except ValueError:
            # Unrecognized hash format
            return False


class TokenService:
    """Issues and verifies access and refresh tokens.

    Args:
        secret_key: HMAC key for access tokens.
        refresh_secret_key: HMAC key for refresh tokens. Falls back to
            ``secret_key`` when empty.
        algorithm: JWT signing algorithm.
        access_ttl: Lifetime of access tokens.
        refresh_ttl: Lifetime of refresh tokens.
    """

    def __init__(
        self,
        secret_key: str,
        refresh_secret_key: Optional[str] = None,
        algorithm: str = "HS256",
        access_ttl: timedelta = timedelta(hours=24),
        refresh_ttl: timedelta = timedelta(days=7),
    ) -> None:
        if not secret_key:
            raise ValueError("A JWT secret key is required")
        self._secret_key = secret_key
        self._refresh_secret_key = refresh_secret_key or secret_key
        self._algorithm = algorithm
        self._access_ttl = access_ttl
        self._refresh_ttl = refresh_ttl

    def _encode(self, identity: Identity, kind: str, ttl: timedelta, key: str) -> str:
        now = datetime.now(timezone.utc)
        payload = {
            "sub": identity.userId,
            "username": identity.username,
            "type": kind,
            "iat": now,
            "exp": now + ttl,
        }
        return jwt.encode(payload, key, algorithm=self._algorithm)

    def issue(self, identity: Identity) -> str:
        return self._encode(identity, ACCESS, self._access_ttl, self._secret_key)

    def issue_refresh(self, identity: Identity) -> str:
        return self._encode(identity, REFRESH, self._refresh_ttl, self._refresh_secret_key)

    def _decode(self, token: Optional[str], kind: str, key: str) -> Identity:
        if not token:
            raise AuthError(AuthFailure.NO_CREDENTIAL)
        try:
            payload = jwt.decode(
                token,
                key,
                algorithms=[self._algorithm],
                options={"require": ["exp", "sub"]},
            )
        except jwt.ExpiredSignatureError:
            raise AuthError(AuthFailure.EXPIRED_CREDENTIAL)
        except jwt.InvalidTokenError as e:
            logger.debug("[Auth] Rejected %s token: %s", kind, e)
            raise AuthError(AuthFailure.INVALID_CREDENTIAL)

        if payload.get("type") != kind or not payload.get("username"):
            raise AuthError(AuthFailure.INVALID_CREDENTIAL)
        return Identity(userId=payload["sub"], username=payload["username"])

    def verify(self, token: Optional[str]) -> Identity:
        """Resolve an access token to the identity it was issued for.

        Raises:
            AuthError: With reason no-credential, invalid-credential or
                expired-credential.
        """
        return self._decode(token, ACCESS, self._secret_key)

    def verify_refresh(self, token: Optional[str]) -> Identity:
        return self._decode(token, REFRESH, self._refresh_secret_key)
