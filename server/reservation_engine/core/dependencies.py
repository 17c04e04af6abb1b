"""FastAPI dependencies for caller identity."""

from typing import Callable, Optional

import jwt
from fastapi import Depends, Header
from jwt import PyJWTError

from .config import settings
from .exceptions import AuthenticationError, AuthorizationError
from .identity import Caller


async def get_current_user(
    authorization: Optional[str] = Header(None, alias="Authorization")
) -> Caller:
    """
    Authentication dependency that reads the identity service's bearer token.

    The token is trusted once its signature checks out; issuing it is the
    identity service's job.

    Args:
        authorization: Authorization header with Bearer token

    Returns:
        Caller: Subject and roles from the token

    Raises:
        AuthenticationError: If the token is missing or invalid
    """
    if not authorization:
        raise AuthenticationError(detail="Authorization header missing")

    try:
        scheme, token = authorization.split()
    except ValueError:
        raise AuthenticationError(detail="Invalid authorization header format")
    if scheme.lower() != "bearer":
        raise AuthenticationError(detail="Invalid authentication scheme")

    try:
        # PyJWT rejects expired tokens itself when an exp claim is present
        payload = jwt.decode(
            token,
            settings.bearer_token_secret,
            algorithms=["HS256"]
        )
    except PyJWTError as e:
        raise AuthenticationError(detail=f"Token validation failed: {str(e)}")

    user_id = payload.get("sub")
    if not user_id:
        raise AuthenticationError(detail="Invalid token payload")

    roles = payload.get("roles", [])
    if isinstance(roles, str):
        roles = [roles]

    return Caller(user_id=str(user_id), roles=frozenset(roles))


def require_roles(*roles: str) -> Callable:
    """Dependency factory admitting only callers holding one of ``roles``."""

    async def dependency(caller: Caller = Depends(get_current_user)) -> Caller:
        if not caller.has_any_role(*roles):
            raise AuthorizationError(required_roles=list(roles))
        return caller

    return dependency


RequiredAuth = Depends(get_current_user)