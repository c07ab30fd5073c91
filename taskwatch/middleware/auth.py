"""Bearer JWT authentication for the routines API."""
from typing import Any, Dict, Optional

from fastapi import HTTPException, Request, status
from jose import JWTError, jwt
from pydantic import BaseModel

from taskwatch.config import get_settings

JWT_ALGORITHM = "HS256"
BEARER_PREFIX = "Bearer "


class CurrentUser(BaseModel):
    """Identity carried by a verified token."""
    user_id: str
    email: Optional[str] = None


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"},
    )


def decode_token(token: str) -> Dict[str, Any]:
    """
    Verify a token signed with the shared secret.

    Raises:
        HTTPException: 401 when the token is expired or invalid
    """
    try:
        return jwt.decode(token, get_settings().auth_secret, algorithms=[JWT_ALGORITHM])
    except jwt.ExpiredSignatureError:
        raise _unauthorized("Token has expired")
    except JWTError as e:
        raise _unauthorized(f"Invalid token: {str(e)}")


async def get_current_user(request: Request) -> CurrentUser:
    """
    Resolve the caller from the Authorization header.

    The token's ``sub`` claim is the user id that routine paths are scoped to.

    Raises:
        HTTPException: 401 when the header is missing or the token is unusable
    """
    auth_header = request.headers.get("authorization")
    if not auth_header or not auth_header.startswith(BEARER_PREFIX):
        raise _unauthorized("Missing or invalid Authorization header")

    payload = decode_token(auth_header[len(BEARER_PREFIX):])
    user_id = payload.get("sub")
    if not user_id:
        raise _unauthorized("Invalid token: missing user ID")

    return CurrentUser(user_id=user_id, email=payload.get("email"))


def verify_user_access(user_id: str, current_user: CurrentUser) -> None:
    """Raise 403 unless the path user is the authenticated user."""
    if user_id != current_user.user_id:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Not authorized to access this user's routines"
        )
