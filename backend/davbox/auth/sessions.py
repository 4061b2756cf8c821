"""Session lifecycle: login, lazy-expiry validation, logout and sweeping."""

import asyncio
import logging
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from sqlalchemy import delete

from davbox.auth.models import SessionState, UserSession, as_utc
from davbox.auth.tokens import create_session_token, decode_session_token, verify_password
from davbox.config import Settings
from davbox.db.session import Database
from davbox.errors import InvalidCredentials, NoSuchSession, SessionExpired
from davbox.users.models import User

log = logging.getLogger(__name__)

Clock = Callable[[], datetime]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class IssuedSession:
    """What login() hands back: the bearer token and the stored session."""

    token: str
    session: UserSession


class SessionManager:
    """
    Issues and checks session tokens. A token is a signed reference to a row
    in the sessions table; the row decides whether the session is still
    valid, so logout and user deletion take effect immediately.
    """

    def __init__(self, settings: Settings, database: Database, clock: Optional[Clock] = None) -> None:
        if not settings.secret_key:
            raise ValueError("secret_key must be set (DAVBOX_SECRET_KEY)")
        self._settings = settings
        self._db = database
        self._clock = clock or _utcnow
        self.timeout = timedelta(seconds=settings.session_timeout_seconds)

    def _now(self) -> datetime:
        return as_utc(self._clock())

    async def login(self, user_id: str, password: str) -> IssuedSession:
        """Check credentials and open a session. Raises InvalidCredentials."""
        async with self._db.session() as session:
            user = await session.get(User, user_id)
        # bcrypt is slow on purpose; keep it off the event loop
        if user is None or not await asyncio.to_thread(verify_password, password, user.password_hash):
            log.warning("Login failed for user=%s", user_id)
            raise InvalidCredentials("Invalid login or password")
        now = self._now()
        row = UserSession(
            id=secrets.token_urlsafe(32),
            user_id=user.id,
            created_at=now,
            expires_at=now + self.timeout,
        )
        async with self._db.transaction() as session:
            session.add(row)
        token = create_session_token(row.id, row.user_id, row.expires_at, self._settings.secret_key)
        log.info("Login successful for user=%s", user.id)
        return IssuedSession(token=token, session=row)

    def _session_id(self, token: str) -> tuple[str, str]:
        payload = decode_session_token(token or "", self._settings.signing_keys)
        if payload is None:
            raise NoSuchSession("Invalid session token")
        return payload["sid"], payload.get("sub") or ""

    async def validate(self, token: str) -> User:
        """Return the session's user. Raises NoSuchSession or SessionExpired."""
        sid, subject = self._session_id(token)
        user = None
        async with self._db.session() as session:
            row = await session.get(UserSession, sid)
            if row is None or row.user_id != subject:
                raise NoSuchSession("No such session")
            state = row.state_at(self._now())
            if state is SessionState.ACTIVE:
                user = await session.get(User, row.user_id)
        if state is SessionState.EXPIRED:
            await self._forget(sid)
            log.debug("Session expired user=%s", subject)
            raise SessionExpired("Session expired")
        if user is None:
            raise NoSuchSession("Session user no longer exists")
        return user

    async def state(self, token: str) -> SessionState:
        """Lifecycle state of a token with a valid signature."""
        sid, _ = self._session_id(token)
        async with self._db.session() as session:
            row = await session.get(UserSession, sid)
        if row is None:
            return SessionState.REVOKED
        return row.state_at(self._now())

    async def logout(self, token: str) -> None:
        """Revoke the session; validate() fails with NoSuchSession afterwards."""
        sid, subject = self._session_id(token)
        if not await self._forget(sid):
            raise NoSuchSession("No such session")
        log.info("Logout user=%s", subject)

    async def _forget(self, sid: str) -> bool:
        async with self._db.transaction() as session:
            result = await session.execute(delete(UserSession).where(UserSession.id == sid))
        return result.rowcount > 0

    async def revoke_user(self, user_id: str) -> int:
        """Revoke every session of a user; returns how many there were."""
        async with self._db.transaction() as session:
            result = await session.execute(delete(UserSession).where(UserSession.user_id == user_id))
        if result.rowcount:
            log.info("Revoked %d session(s) of user=%s", result.rowcount, user_id)
        return result.rowcount

    async def sweep_expired(self) -> int:
        """Delete expired session rows. Not needed for correctness, only for space."""
        async with self._db.transaction() as session:
            result = await session.execute(
                delete(UserSession).where(UserSession.expires_at <= self._now())
            )
        if result.rowcount:
            log.info("Swept %d expired session(s)", result.rowcount)
        return result.rowcount
