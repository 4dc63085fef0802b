"""Session token refresh endpoint."""
from fastapi import APIRouter, Depends

from api.dependencies import get_components
from schemas.auth import TokenRefreshRequest, TokenRefreshResponse
from services.container import AuthComponents

router = APIRouter(prefix="/api/v1/auth", tags=["auth"])


@router.post("/refresh", response_model=TokenRefreshResponse)
async def refresh(
    data: TokenRefreshRequest,
    components: AuthComponents = Depends(get_components),
) -> TokenRefreshResponse:
    """
    Trade a refresh token for a new session and token pair.

    The old session is replaced, so each refresh token works once. 401 when the
    token is invalid or its session is no longer the user's active one.
    """
    refreshed = await components.auth.refresh(data.refresh_token)
    return TokenRefreshResponse.from_refreshed_session(refreshed)
