"""Account deletion endpoint."""
from fastapi import APIRouter, Depends
from pydantic import BaseModel

from api.dependencies import get_components, get_current_session
from schemas.session import SessionRecord
from services.container import AuthComponents

router = APIRouter(prefix="/api/v1/account", tags=["account"])


class AccountDeleteResponse(BaseModel):
    """What an account deletion removed."""

    identity_deleted: bool
    sessions_deleted: int
    connections_revoked: int


@router.delete("", response_model=AccountDeleteResponse)
async def delete_account(
    current_session: SessionRecord = Depends(get_current_session),
    components: AuthComponents = Depends(get_components),
) -> AccountDeleteResponse:
    """
    Permanently delete the current user's account.

    Provider connections are revoked first, best-effort. Returns 503 when the
    identity provider cannot delete the account; local data is already gone by
    then and the call can be retried.
    """
    result = await components.accounts.delete_account(current_session.user_id)
    return AccountDeleteResponse(
        identity_deleted=result.identity_deleted,
        sessions_deleted=result.sessions_deleted,
        connections_revoked=result.connections_revoked,
    )
