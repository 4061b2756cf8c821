"""User routes: login, logout, me, admin create/delete/quota."""

import asyncio
import logging
from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException, Request, status

from davbox.auth.dependencies import (
    get_current_admin,
    get_current_user,
    get_database,
    get_gate,
    get_token,
)
from davbox.auth.tokens import verify_password
from davbox.db.session import Database
from davbox.files.quota import QuotaUsage
from davbox.gate import AccessGate
from davbox.limiter import LOGIN_LIMIT, limiter
from davbox.users.models import (
    ChangePassword,
    QuotaResponse,
    QuotaUpdate,
    SessionResponse,
    User,
    UserCreate,
    UserLogin,
    UserResponse,
)
from davbox.users.service import (
    change_password as do_change_password,
    create_user as do_create_user,
    delete_user as do_delete_user,
    list_users,
)

router = APIRouter(prefix="/api", tags=["users"])
log = logging.getLogger(__name__)


def quota_response(usage: QuotaUsage) -> QuotaResponse:
    return QuotaResponse(used_bytes=usage.used, limit_bytes=usage.limit, free_bytes=usage.free)


@router.post("/auth/login", response_model=SessionResponse)
@limiter.limit(LOGIN_LIMIT)
async def login(
    request: Request,
    body: UserLogin,
    gate: Annotated[AccessGate, Depends(get_gate)],
) -> SessionResponse:
    """Login with user id and password; returns a session token."""
    issued = await gate.authenticate(body.login, body.password)
    return SessionResponse(
        token=issued.token,
        expires_at=issued.session.expires_at,
        expires_in=int(gate.sessions.timeout.total_seconds()),
    )


@router.post("/auth/logout")
async def logout(
    token: Annotated[str, Depends(get_token)],
    gate: Annotated[AccessGate, Depends(get_gate)],
) -> dict:
    """Revoke the current session."""
    await gate.logout(token)
    return {"detail": "Logged out"}


@router.get("/users/me", response_model=UserResponse)
async def me(
    current_user: Annotated[User, Depends(get_current_user)],
) -> UserResponse:
    """Return current authenticated user."""
    return UserResponse.model_validate(current_user)


@router.post("/auth/change-password")
@limiter.limit(LOGIN_LIMIT)
async def change_password(
    request: Request,
    body: ChangePassword,
    current_user: Annotated[User, Depends(get_current_user)],
    database: Annotated[Database, Depends(get_database)],
) -> dict:
    """Change the current user's password. Requires current password."""
    if not await asyncio.to_thread(verify_password, body.current_password, current_user.password_hash):
        log.warning("Change password failed for user=%s: wrong current password", current_user.id)
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Current password is incorrect",
        )
    await do_change_password(database, current_user.id, body.new_password)
    return {"detail": "Password updated"}


@router.post("/users", response_model=UserResponse, status_code=status.HTTP_201_CREATED)
async def admin_create_user(
    request: Request,
    payload: UserCreate,
    current_user: Annotated[User, Depends(get_current_admin)],
    database: Annotated[Database, Depends(get_database)],
    gate: Annotated[AccessGate, Depends(get_gate)],
) -> UserResponse:
    """Create a new user (admin only). Quota defaults to DAVBOX_DEFAULT_QUOTA_BYTES."""
    try:
        user = await do_create_user(database, gate.store, request.app.state.settings, payload)
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    log.info("Admin %s created user=%s", current_user.id, user.id)
    return UserResponse.model_validate(user)


@router.get("/users", response_model=list[UserResponse])
async def admin_list_users(
    current_user: Annotated[User, Depends(get_current_admin)],
    database: Annotated[Database, Depends(get_database)],
) -> list[UserResponse]:
    """List all users (admin only)."""
    users = await list_users(database)
    log.info("Admin %s listed users count=%d", current_user.id, len(users))
    return [UserResponse.model_validate(u) for u in users]


@router.delete("/users/{user_id}", status_code=status.HTTP_204_NO_CONTENT)
async def admin_delete_user(
    user_id: str,
    current_user: Annotated[User, Depends(get_current_admin)],
    database: Annotated[Database, Depends(get_database)],
    gate: Annotated[AccessGate, Depends(get_gate)],
) -> None:
    """Delete a user with their sessions and files (admin only)."""
    if user_id == current_user.id:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Cannot delete your own account",
        )
    await do_delete_user(database, gate.store, gate.sessions, gate.ledger, user_id)
    log.info("Admin %s deleted user=%s", current_user.id, user_id)
    return None


@router.patch("/users/{user_id}/quota", response_model=QuotaResponse)
async def admin_set_quota(
    user_id: str,
    body: QuotaUpdate,
    current_user: Annotated[User, Depends(get_current_admin)],
    gate: Annotated[AccessGate, Depends(get_gate)],
) -> QuotaResponse:
    """Set a user's quota in bytes (admin only). 0 = unlimited."""
    usage = await gate.ledger.set_limit(user_id, body.quota_limit)
    log.info("Admin %s set quota of user=%s to %d", current_user.id, user_id, body.quota_limit)
    return quota_response(usage)


@router.post("/users/{user_id}/quota/reconcile", response_model=QuotaResponse)
async def admin_reconcile_quota(
    user_id: str,
    current_user: Annotated[User, Depends(get_current_admin)],
    gate: Annotated[AccessGate, Depends(get_gate)],
) -> QuotaResponse:
    """Recompute a user's used bytes from stored metadata (admin only)."""
    if not await gate.reconcile(user_id):
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="User has writes in progress; try again",
        )
    return quota_response(await gate.ledger.usage(user_id))
