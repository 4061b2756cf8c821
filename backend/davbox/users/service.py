"""User service: provisioning, deletion cascade, bootstrap admin."""

import asyncio
import logging
from typing import List, Optional

from sqlalchemy import delete, select

from davbox.auth.sessions import SessionManager
from davbox.auth.tokens import hash_password
from davbox.config import Settings
from davbox.db.session import Database
from davbox.errors import NotFound
from davbox.files.models import StorageEntry
from davbox.files.paths import is_valid_user_id
from davbox.files.quota import QuotaLedger
from davbox.files.store import StorageStore
from davbox.users.models import User, UserCreate

log = logging.getLogger(__name__)


async def get_user(database: Database, user_id: str) -> Optional[User]:
    """Return user by id or None."""
    async with database.session() as session:
        return await session.get(User, user_id)


async def list_users(database: Database) -> List[User]:
    async with database.session() as session:
        result = await session.execute(select(User).order_by(User.id))
        return list(result.scalars().all())


async def create_user(
    database: Database,
    store: StorageStore,
    settings: Settings,
    payload: UserCreate,
) -> User:
    """
    Provision a user: store in DB with the default quota (unless the payload
    sets one) and create the storage root. Raises ValueError for an unusable
    or duplicate id.
    """
    if not is_valid_user_id(payload.id):
        raise ValueError(f"Invalid user id: {payload.id!r}")
    password_hash = await asyncio.to_thread(hash_password, payload.password)
    quota_limit = settings.default_quota_bytes if payload.quota_limit is None else payload.quota_limit
    async with database.transaction() as session:
        if await session.get(User, payload.id) is not None:
            raise ValueError(f"User already exists: {payload.id}")
        user = User(
            id=payload.id,
            password_hash=password_hash,
            is_admin=payload.is_admin,
            quota_limit=quota_limit,
            quota_used=0,
        )
        session.add(user)
        await session.flush()
        await session.refresh(user)
    await store.ensure_root(user.id)
    log.info("Created user=%s quota_limit=%d", user.id, quota_limit)
    return user


async def delete_user(
    database: Database,
    store: StorageStore,
    sessions: SessionManager,
    ledger: QuotaLedger,
    user_id: str,
) -> None:
    """Delete a user with their sessions, entries and storage tree."""
    if await get_user(database, user_id) is None:
        raise NotFound(f"No such user: {user_id}")
    await sessions.revoke_user(user_id)
    async with database.transaction() as session:
        await session.execute(delete(StorageEntry).where(StorageEntry.owner_id == user_id))
        await session.execute(delete(User).where(User.id == user_id))
    ledger.forget(user_id)
    await store.remove_root(user_id)
    log.info("Deleted user=%s", user_id)


async def ensure_admin_exists(database: Database, store: StorageStore, settings: Settings) -> None:
    """
    If DAVBOX_ADMIN_LOGIN and DAVBOX_ADMIN_INITIAL_PASSWORD are set
    and no user exists with that id, create the first admin user.
    """
    if not settings.admin_login or not settings.admin_initial_password:
        return
    if await get_user(database, settings.admin_login) is not None:
        return
    log.info("Creating bootstrap admin user=%s", settings.admin_login)
    payload = UserCreate(
        id=settings.admin_login,
        password=settings.admin_initial_password,
        is_admin=True,
    )
    await create_user(database, store, settings, payload)


async def change_password(database: Database, user_id: str, new_password: str) -> None:
    """Store a new password hash for the user."""
    password_hash = await asyncio.to_thread(hash_password, new_password)
    async with database.transaction() as session:
        user = await session.get(User, user_id)
        if user is None:
            raise NotFound(f"No such user: {user_id}")
        user.password_hash = password_hash
    log.info("Password changed for user=%s", user_id)
