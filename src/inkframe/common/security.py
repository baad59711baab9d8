"""Bearer-token identity resolution."""

from typing import Optional

from fastapi import Header, HTTPException
from itsdangerous import BadSignature, SignatureExpired, URLSafeTimedSerializer

TOKEN_SALT = "user-session"


def _get_serializer() -> URLSafeTimedSerializer:
    from inkframe.common.config import get_settings
    return URLSafeTimedSerializer(get_settings().secret_key, salt=TOKEN_SALT)


def issue_user_token(user_id: str) -> str:
    """Sign a session payload for ``user_id`` and return the bearer token."""
    return _get_serializer().dumps({"sub": user_id})


def verify_user_token(token: str) -> Optional[str]:
    """Verify a bearer token. Returns the user id or None."""
    from inkframe.common.config import get_settings

    try:
        payload = _get_serializer().loads(token, max_age=get_settings().session_max_age)
    except (BadSignature, SignatureExpired):
        return None
    if not isinstance(payload, dict):
        return None
    user_id = payload.get("sub")
    if not isinstance(user_id, str) or not user_id:
        return None
    return user_id


async def require_user(
    authorization: Optional[str] = Header(None, alias="Authorization"),
) -> str:
    """FastAPI dependency that resolves the calling user id from the bearer token."""
    if not authorization:
        raise HTTPException(status_code=401, detail="Authentication required")
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise HTTPException(status_code=401, detail="Authentication required")
    user_id = verify_user_token(token.strip())
    if user_id is None:
        raise HTTPException(status_code=401, detail="Authentication required")
    return user_id
