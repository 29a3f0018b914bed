"""FastAPI dependencies for the service container and the caller's identity."""
from typing import Mapping, Optional

from fastapi import Depends, Request

from ..errors import AuthError, AuthFailure
from ..services import Services
from .schemas import Identity


def get_services(request: Request) -> Services:
    return request.app.state.services


def extract_credential(
    headers: Mapping[str, str],
    cookies: Mapping[str, str],
    cookie_name: str = "token",
) -> Optional[str]:
    """Bearer token from the Authorization header, falling back to the cookie."""
    authorization = headers.get("authorization") or ""
    scheme, _, value = authorization.partition(" ")
    if scheme.lower() == "bearer" and value.strip():
        return value.strip()
    return cookies.get(cookie_name) or None


def get_current_identity(
    request: Request,
    services: Services = Depends(get_services),
) -> Identity:
    """Verify the request's bearer credential.

    Raises:
        AuthError: 401 with the typed reason.
    """
    credential = extract_credential(request.headers, request.cookies, services.config.auth.cookie_name)
    if credential is None:
        raise AuthError(AuthFailure.NO_CREDENTIAL)
    return services.tokens.verify(credential)
