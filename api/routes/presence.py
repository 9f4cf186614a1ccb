"""
Presence API routes
Session open/close and the 24h tribe pulse
"""

from fastapi import APIRouter, Depends

from api.dependencies.auth import get_current_viewer, get_presence_service, get_pulse_monitor
from schemas.calendar import (
    PulseResponse,
    SessionCloseRequest,
    SessionOpenRequest,
    SessionResponse,
)

router = APIRouter()


@router.post("/sessions", response_model=SessionResponse)
async def open_session(
    request: SessionOpenRequest,
    viewer_id: str = Depends(get_current_viewer),
    presence=Depends(get_presence_service),
):
    """Start a presence session for the caller"""
    interval_id = await presence.open_interval(viewer_id, request.started_at)
    return SessionResponse(id=interval_id)


@router.post("/sessions/{interval_id}/close", response_model=SessionResponse)
async def close_session(
    interval_id: int,
    request: SessionCloseRequest,
    viewer_id: str = Depends(get_current_viewer),
    presence=Depends(get_presence_service),
):
    """
    Close a session

    Closing an already closed session is a no-op (**closed** is false).
    """
    closed = await presence.close_interval(interval_id, request.ended_at, subject_id=viewer_id)
    return SessionResponse(id=interval_id, closed=closed)


@router.get("/pulse", response_model=PulseResponse)
async def get_pulse(monitor=Depends(get_pulse_monitor)):
    """96 fifteen-minute buckets over the last 24h, coverage and current concurrency"""
    snapshot = await monitor.current()
    return PulseResponse(**snapshot.to_dict())
