"""Authentication helpers and FastAPI security dependency.

Accounts live in the external identity service; this module only
verifies the bearer token it issued and exposes the caller's `user_id`
through the `get_current_user_id` dependency.

Token verification raises HTTPExceptions on failure so it can be used
directly inside route dependencies.
"""

from fastapi import HTTPException, Security
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
import jwt

from .config import settings

bearer_scheme = HTTPBearer()


def decode_token(token: str):
    """Decode and verify a JWT token.

    Returns the decoded payload on success or raises an HTTPException
    with status 401 on failure.
    """
    try:
        return jwt.decode(token, settings.JWT_SECRET, algorithms=[settings.JWT_ALGORITHM])
    except jwt.ExpiredSignatureError:
        raise HTTPException(status_code=401, detail='token expired')
    except jwt.InvalidTokenError:
        raise HTTPException(status_code=401, detail='invalid token')


def get_current_user_id(credentials: HTTPAuthorizationCredentials = Security(bearer_scheme)) -> int:
    """FastAPI dependency returning the authenticated user's id."""
    payload = decode_token(credentials.credentials)
    user_id = payload.get('user_id')
    if not isinstance(user_id, int) or isinstance(user_id, bool):
        raise HTTPException(status_code=401, detail='invalid token payload')
    return user_id
