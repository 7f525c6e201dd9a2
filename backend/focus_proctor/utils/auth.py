import logging
from typing import Any, Dict, Optional

import jwt
from fastapi import Depends, HTTPException, Request

from ..config import Settings, get_settings

logger = logging.getLogger(__name__)


def create_access_token(payload: Dict[str, Any], secret: str) -> str:
    return jwt.encode(payload, secret, algorithm="HS256")


def require_auth(request: Request, settings: Settings = Depends(get_settings)) -> Optional[Dict[str, Any]]:
    """Capability check for mutating endpoints (Bearer JWT, HS256)"""
    header = request.headers.get("authorization")
    if not header:
        if not settings.AUTH_REQUIRED:
            return None
        raise HTTPException(status_code=401, detail="Missing Authorization header")

    scheme, _, token = header.partition(" ")
    if scheme.lower() != "bearer" or not token:
        if not settings.AUTH_REQUIRED:
            return None
        raise HTTPException(status_code=401, detail="Invalid Authorization header")

    try:
        return jwt.decode(token, settings.JWT_SECRET, algorithms=["HS256"])
    except jwt.PyJWTError as e:
        if not settings.AUTH_REQUIRED:
            return None
        logger.warning(f"Rejected token: {e}")
        raise HTTPException(status_code=401, detail="Unauthorized")
