"""FastAPI dependencies for injection."""
from fastapi import Depends
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from core.config import get_settings
from db.session import get_async_session
from schemas.session import SessionRecord
from services.container import AuthComponents
from services.container import get_components as _get_components
from services.exceptions import ServiceUnavailableError, UnauthorizedError

security = HTTPBearer(auto_error=False)


def get_components() -> AuthComponents:
    """Component graph built at startup; 503 until the lifespan has run."""
    components = _get_components()
    if components is None:
        raise ServiceUnavailableError("Service is starting up")
    return components


async def get_current_session(
    credentials: HTTPAuthorizationCredentials | None = Depends(security),
    components: AuthComponents = Depends(get_components),
) -> SessionRecord:
    """
    Active session bound to the request's bearer access token.

    Raises:
        UnauthorizedError: No token, a bad token, or a session that is no longer active.
    """
    if credentials is None:
        raise UnauthorizedError("Not authenticated")
    return await components.auth.authenticate(credentials.credentials)


__all__ = [
    "get_async_session",
    "get_components",
    "get_current_session",
    "get_settings",
]
