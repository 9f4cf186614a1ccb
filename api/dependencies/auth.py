"""
Authentication and service dependencies
Bearer token is optional: no token means an anonymous viewer
"""

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from typing import Optional
import logging

from utils.jwt_auth import JWTManager

logger = logging.getLogger(__name__)
security = HTTPBearer(auto_error=False)


async def get_optional_viewer(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
) -> Optional[str]:
    """
    Resolve the viewer id from the bearer token

    Returns:
        viewer id, or None when no token was sent

    Raises:
        HTTPException: 401 for a token that does not verify
    """
    if not credentials:
        return None

    viewer_id = JWTManager.viewer_id(credentials.credentials)
    if not viewer_id:
        logger.warning("Rejected invalid bearer token")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return viewer_id


async def get_current_viewer(
    viewer_id: Optional[str] = Depends(get_optional_viewer),
) -> str:
    """Same as get_optional_viewer but authentication is required"""
    if viewer_id is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Authentication required",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return viewer_id


# Services are built once in the lifespan and kept on app.state


def get_event_store(request: Request):
    return request.app.state.event_store


def get_query_service(request: Request):
    return request.app.state.query_service


def get_moon_cache(request: Request):
    return request.app.state.moon_cache


def get_rsvp_service(request: Request):
    return request.app.state.rsvp_service


def get_presence_service(request: Request):
    return request.app.state.presence_service


def get_pulse_monitor(request: Request):
    return request.app.state.pulse_monitor
