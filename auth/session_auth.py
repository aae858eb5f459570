# auth/session_auth.py
import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

import jwt
from fastapi import Depends, Header, HTTPException, Query

from settings import Settings, get_settings

logger = logging.getLogger(__name__)


class SessionError(Exception):
    pass


def create_session_token(user_id: str, settings: Settings, expires_in_minutes: Optional[int] = None) -> str:
    """Signed session token for the dashboard API and the event stream."""
    minutes = expires_in_minutes or settings.session_ttl_minutes
    payload = {
        "sub": user_id,
        "exp": datetime.now(timezone.utc) + timedelta(minutes=minutes),
    }
    return jwt.encode(payload, settings.session_secret, algorithm=settings.session_algorithm)


def decode_session_token(token: str, settings: Settings) -> str:
    """
    Verifies the token, checks expiration and returns the user id.
    """
    try:
        payload = jwt.decode(token, settings.session_secret, algorithms=[settings.session_algorithm])
    except jwt.ExpiredSignatureError:
        raise SessionError("Session token expired")
    except jwt.InvalidTokenError:
        raise SessionError("Invalid session token")
    user_id = payload.get("sub")
    if not user_id:
        raise SessionError("Session token has no subject")
    return user_id


def verify_session(authorization: str = Header(None), settings: Settings = Depends(get_settings)) -> str:
    """
    Verify the session token from the Authorization header.

    Returns:
        str: the authenticated user id
    """
    if not authorization:
        raise HTTPException(status_code=401, detail="Missing Authorization header")
    if not authorization.startswith("Bearer "):
        raise HTTPException(status_code=401, detail="Invalid Authorization header format. Expected 'Bearer <token>'")

    token = authorization.split("Bearer ", 1)[1].strip()
    if not token:
        raise HTTPException(status_code=401, detail="Empty token")
    try:
        return decode_session_token(token, settings)
    except SessionError as e:
        logger.warning("❌ Rejected session: %s", e)
        raise HTTPException(status_code=401, detail=str(e))


def verify_stream_token(token: str = Query(None), settings: Settings = Depends(get_settings)) -> str:
    """EventSource cannot send headers, so the stream authenticates with ?token=."""
    if not token:
        raise HTTPException(status_code=401, detail="Missing token")
    try:
        return decode_session_token(token, settings)
    except SessionError as e:
        logger.warning("❌ Rejected stream session: %s", e)
        raise HTTPException(status_code=401, detail=str(e))
