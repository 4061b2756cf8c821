"""FastAPI dependencies for auth."""

import logging
from typing import Annotated, Optional

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from davbox.db.session import Database
from davbox.errors import Forbidden
from davbox.gate import AccessGate
from davbox.users.models import User

security = HTTPBearer(auto_error=False)
log = logging.getLogger(__name__)


def get_gate(request: Request) -> AccessGate:
    """The AccessGate built at startup."""
    return request.app.state.gate


def get_database(request: Request) -> Database:
    return request.app.state.database


async def get_token(
    credentials: Annotated[Optional[HTTPAuthorizationCredentials], Depends(security)],
) -> str:
    """Bearer token from the Authorization header; 401 if missing."""
    if not credentials:
        log.debug("Request missing Bearer token")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return credentials.credentials


async def get_current_user(
    token: Annotated[str, Depends(get_token)],
    gate: Annotated[AccessGate, Depends(get_gate)],
) -> User:
    """Resolve Bearer token to current user; Unauthorized is mapped to 401 by the app."""
    return await gate.whoami(token)


async def get_current_admin(
    current_user: Annotated[User, Depends(get_current_user)],
) -> User:
    """Require current user to be admin."""
    if not current_user.is_admin:
        log.warning("Non-admin user attempted admin action: user=%s", current_user.id)
        raise Forbidden("Admin required")
    return current_user
