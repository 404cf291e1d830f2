from typing import Any, Dict, Optional

import jwt
from fastapi import Header, HTTPException

from .config import get_settings


def decode_access_token(token: str) -> Optional[Dict[str, Any]]:
    settings = get_settings()
    try:
        return jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    except jwt.PyJWTError:
        return None


def get_current_user_id(authorization: Optional[str] = Header(None)) -> str:
    """FastAPI dependency: the `sub` claim of a valid bearer token."""
    if not authorization or not authorization.lower().startswith("bearer "):
        raise HTTPException(status_code=401, detail="Not authorized")
    data = decode_access_token(authorization.split(" ", 1)[1].strip())
    if not data or data.get("sub") is None:
        raise HTTPException(status_code=401, detail="Not authorized")
    return str(data["sub"])
