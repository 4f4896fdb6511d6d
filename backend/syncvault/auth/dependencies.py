"""FastAPI dependencies that resolve the caller's user id."""

import logging
from typing import Annotated, Optional

from fastapi import Depends, HTTPException, WebSocket, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from syncvault.auth.jwt import get_subject_from_access

security = HTTPBearer(auto_error=False)
log = logging.getLogger(__name__)


async def get_current_user_id(
    credentials: Annotated[Optional[HTTPAuthorizationCredentials], Depends(security)],
) -> str:
    """Resolve Bearer token to the user id; raise 401 if invalid or missing."""
    if not credentials:
        log.debug("Request missing Bearer token")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
            headers={"WWW-Authenticate": "Bearer"},
        )
    user_id = get_subject_from_access(credentials.credentials)
    if not user_id:
        log.debug("Invalid or expired access token")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired token",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return user_id


def websocket_user_id(websocket: WebSocket) -> Optional[str]:
    """User id from the 'token' query parameter or an Authorization: Bearer header."""
    token = websocket.query_params.get("token")
    if not token:
        header = websocket.headers.get("authorization", "")
        scheme, _, value = header.partition(" ")
        if scheme.lower() == "bearer":
            token = value.strip()
    if not token:
        return None
    return get_subject_from_access(token)
