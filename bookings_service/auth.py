from typing import Any, Dict, Optional

from fastapi import Depends
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt

from .config import ALGORITHM, SECRET_KEY
from .entity import UserId
from .errors import Unauthenticated

security = HTTPBearer(auto_error=False)


def decode_user_id(token: str) -> UserId:
    """
    Decode a JWT issued by the Users service and return the caller's id.

    Parameters
    ----------
    token : str
        Encoded HS256 JWT.

    Returns
    -------
    UserId
        The ``user_id`` claim as a string.

    Raises
    ------
    Unauthenticated
        If the token is invalid, expired, or carries no ``user_id``.
    """
    try:
        payload: Dict[str, Any] = jwt.decode(token, SECRET_KEY, algorithms=[ALGORITHM])
    except JWTError:
        raise Unauthenticated("Invalid or expired token")

    user_id = payload.get("user_id")
    if user_id is None or str(user_id).strip() == "":
        raise Unauthenticated("Token carries no user id")
    return UserId(str(user_id))


async def get_current_user_id(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
) -> UserId:
    """
    Resolve the acting user from the Authorization bearer token.

    Raises
    ------
    Unauthenticated
        If the header is missing or the token cannot be decoded.
    """
    if credentials is None or credentials.scheme.lower() != "bearer":
        raise Unauthenticated("Missing or invalid Authorization header")
    return decode_user_id(credentials.credentials)
