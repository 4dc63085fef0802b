"""Session status and logout endpoints."""
from fastapi import APIRouter, Depends, Query

from api.dependencies import get_components
from schemas.session import SessionDeleteResponse, SessionResponse
from services.container import AuthComponents
from services.exceptions import NotFoundError

router = APIRouter(prefix="/api/v1/session", tags=["session"])


@router.get("", response_model=SessionResponse)
async def get_session(
    session_id: str = Query(..., alias="sessionId", min_length=1),
    components: AuthComponents = Depends(get_components),
) -> SessionResponse:
    """
    Current state of a session.

    Active sessions get ``last_seen_at`` bumped in the background; the response
    carries the value read before the bump.
    """
    record = await components.sessions.get_session(session_id)
    if record is None:
        raise NotFoundError("Session not found")
    if record.is_active:
        components.runner.spawn(
            f"session-touch:{session_id[:8]}",
            lambda: components.sessions.touch_session(session_id),
        )
    return SessionResponse.model_validate(record)


@router.delete("/{session_id}", response_model=SessionDeleteResponse)
async def delete_session(
    session_id: str,
    components: AuthComponents = Depends(get_components),
) -> SessionDeleteResponse:
    """Log out. Idempotent: repeating the call answers ``revoked=false``."""
    revoked = await components.sessions.delete_session(session_id)
    return SessionDeleteResponse(revoked=revoked)
