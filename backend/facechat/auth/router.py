"""Auth router: face-verified signup and login, token refresh.

Endpoints:
    POST /auth/signup   - Create an account (face must be detectable)
    POST /auth/login    - Password + face match; returns access and refresh tokens
    POST /auth/refresh  - Exchange a refresh token for a new access token
    GET  /auth/me       - The caller's account
"""
import asyncio
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Request, Response

from ..errors import AuthError, AuthFailure, NotFound, ValidationError
from ..services import Services
from .dependencies import get_current_identity, get_services
from .schemas import Identity, LoginRequest, RefreshRequest, SignupRequest, TokenResponse, User
from .users import normalize_email

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/auth", tags=["auth"])

REFRESH_COOKIE = "refreshToken"


def _set_cookies(response: Response, services: Services, token: str, refresh_token: Optional[str] = None) -> None:
    auth = services.config.auth
    response.set_cookie(
        auth.cookie_name,
        token,
        httponly=True,
        samesite="lax",
        path="/",
        max_age=auth.token_expire_minutes * 60,
    )
    if refresh_token:
        response.set_cookie(
            REFRESH_COOKIE,
            refresh_token,
            httponly=True,
            samesite="lax",
            path="/",
            max_age=auth.refresh_expire_days * 24 * 3600,
        )


@router.post("/signup", status_code=201)
async def signup(body: SignupRequest, services: Services = Depends(get_services)) -> dict:
    """Register a new account.

    The face image is checked for a detectable face before anything is
    stored; the stored image becomes the template later logins are compared
    against.
    """
    if not body.username.strip() or not body.password:
        raise ValidationError("Missing required fields")
    normalize_email(body.email)

    loop = asyncio.get_event_loop()
    template = await loop.run_in_executor(None, services.faces.enroll, body.faceImage)
    password_hash = await loop.run_in_executor(None, services.passwords.hash, body.password)

    user = services.users.create(body.username, body.email, password_hash, template)
    logger.info("[Auth] Signup for %s", user.username)
    return {
        "message": "User registered successfully",
        "user": User.model_validate(user.model_dump()).model_dump(mode="json"),
    }


@router.post("/login", response_model=TokenResponse)
async def login(
    body: LoginRequest,
    response: Response,
    services: Services = Depends(get_services),
) -> TokenResponse:
    """Password plus face verification. Both must pass."""
    if not body.username or not body.password:
        raise ValidationError("Username and password are required")
    if not body.faceImage:
        raise ValidationError("Face data is required for authentication")

    user = services.users.get_by_username(body.username)
    loop = asyncio.get_event_loop()
    password_ok = user is not None and await loop.run_in_executor(
        None, services.passwords.verify, body.password, user.passwordHash
    )
    if not password_ok:
        logger.info("[Auth] Login rejected for %r: bad credentials", body.username)
        raise AuthError(AuthFailure.INVALID_CREDENTIAL, "Invalid credentials")

    face_ok = await loop.run_in_executor(None, services.faces.matches, user.faceTemplate, body.faceImage)
    if not face_ok:
        logger.info("[Auth] Login rejected for %s: face mismatch", user.username)
        raise AuthError(AuthFailure.INVALID_CREDENTIAL, "Face verification failed")

    identity = Identity(userId=user.id, username=user.username)
    token = services.tokens.issue(identity)
    refresh_token = services.tokens.issue_refresh(identity)
    _set_cookies(response, services, token, refresh_token)
    logger.info("[Auth] Login for %s", user.username)
    return TokenResponse(
        message="Login successful",
        token=token,
        refreshToken=refresh_token,
        user=User.model_validate(user.model_dump()),
    )


@router.post("/refresh", response_model=TokenResponse)
async def refresh(
    request: Request,
    response: Response,
    body: Optional[RefreshRequest] = None,
    services: Services = Depends(get_services),
) -> TokenResponse:
    """Issue a new access token from a refresh token (body or cookie)."""
    refresh_token = (body.refreshToken if body else None) or request.cookies.get(REFRESH_COOKIE)
    identity = services.tokens.verify_refresh(refresh_token)
    user = services.users.get(identity.userId)
    if user is None:
        raise AuthError(AuthFailure.INVALID_CREDENTIAL, "User not found")

    token = services.tokens.issue(Identity(userId=user.id, username=user.username))
    _set_cookies(response, services, token)
    return TokenResponse(message="Token refreshed successfully", token=token)


@router.get("/me", response_model=User)
async def me(
    identity: Identity = Depends(get_current_identity),
    services: Services = Depends(get_services),
) -> User:
    user = services.users.get(identity.userId)
    if user is None:
        raise NotFound("User not found")
    return User.model_validate(user.model_dump())
