"""Storage quota: per-user used/limit counters and write reservations."""

import asyncio
import logging
import uuid
from collections import defaultdict
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, List, Optional

from sqlalchemy import func, or_, select, update

from davbox.db.session import Database
from davbox.errors import Conflict, NotFound, QuotaExceeded
from davbox.users.models import User

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class Reservation:
    """Provisional claim against a user's quota, alive for one write."""

    id: str
    user_id: str
    nbytes: int


@dataclass(frozen=True)
class QuotaUsage:
    used: int
    limit: int

    @property
    def unlimited(self) -> bool:
        return self.limit == 0

    @property
    def free(self) -> Optional[int]:
        """Bytes left, or None when unlimited."""
        if self.unlimited:
            return None
        return max(self.limit - self.used, 0)


class QuotaLedger:
    """
    Owns users.quota_used. reserve() is a single atomic step per user: the
    per-user lock serializes callers in this process and the conditional
    UPDATE makes check-and-increment one statement in the database.
    """

    def __init__(self, database: Database) -> None:
        self._db = database
        self._locks: Dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)
        self._pending: Dict[str, Reservation] = {}

    async def reserve(self, user_id: str, nbytes: int) -> str:
        """Claim nbytes for user_id; return the reservation id. Raises QuotaExceeded or NotFound."""
        if nbytes < 0:
            raise ValueError("Cannot reserve a negative amount")
        async with self._locks[user_id]:
            async with self._db.transaction() as session:
                result = await session.execute(
                    update(User)
                    .where(
                        User.id == user_id,
                        or_(User.quota_limit == 0, User.quota_used + nbytes <= User.quota_limit),
                    )
                    .values(quota_used=User.quota_used + nbytes)
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount != 1:
                    user = await session.get(User, user_id)
                    if user is None:
                        raise NotFound(f"No such user: {user_id}")
                    log.info(
                        "Quota exceeded user=%s used=%d limit=%d requested=%d",
                        user_id, user.quota_used, user.quota_limit, nbytes,
                    )
                    raise QuotaExceeded(
                        f"Quota exceeded: {user.quota_used} + {nbytes} > {user.quota_limit} bytes"
                    )
            reservation = Reservation(id=uuid.uuid4().hex, user_id=user_id, nbytes=nbytes)
            self._pending[reservation.id] = reservation
        log.debug("Reserved %d bytes for user=%s id=%s", nbytes, user_id, reservation.id)
        return reservation.id

    async def commit(self, reservation_id: str) -> None:
        """Finalize a reservation. Counters were already incremented by reserve()."""
        if self._pending.pop(reservation_id, None) is None:
            log.warning("commit: unknown reservation id=%s", reservation_id)

    async def release(self, reservation_id: str) -> None:
        """Roll back a reservation, restoring the exact previous usage."""
        reservation = self._pending.pop(reservation_id, None)
        if reservation is None:
            log.warning("release: unknown reservation id=%s", reservation_id)
            return
        if reservation.nbytes:
            await self._subtract(reservation.user_id, reservation.nbytes)
        log.debug("Released %d bytes for user=%s", reservation.nbytes, reservation.user_id)

    async def credit(self, user_id: str, nbytes: int) -> None:
        """Give back bytes freed by a committed delete, move or shrinking overwrite."""
        if nbytes > 0:
            await self._subtract(user_id, nbytes)

    async def _subtract(self, user_id: str, nbytes: int) -> None:
        async with self._locks[user_id]:
            async with self._db.transaction() as session:
                await session.execute(
                    update(User)
                    .where(User.id == user_id)
                    .values(quota_used=func.max(User.quota_used - nbytes, 0))
                    .execution_options(synchronize_session=False)
                )

    async def usage(self, user_id: str) -> QuotaUsage:
        async with self._db.session() as session:
            row = (
                await session.execute(
                    select(User.quota_used, User.quota_limit).where(User.id == user_id)
                )
            ).one_or_none()
        if row is None:
            raise NotFound(f"No such user: {user_id}")
        return QuotaUsage(used=row[0], limit=row[1])

    async def set_limit(self, user_id: str, limit: int) -> QuotaUsage:
        """Change a user's limit (0 = unlimited). A limit below current usage raises Conflict."""
        if limit < 0:
            raise ValueError("Quota limit must be >= 0")
        async with self._locks[user_id]:
            async with self._db.transaction() as session:
                user = await session.get(User, user_id)
                if user is None:
                    raise NotFound(f"No such user: {user_id}")
                if limit and user.quota_used > limit:
                    raise Conflict(
                        f"Limit {limit} is below current usage of {user.quota_used} bytes"
                    )
                user.quota_limit = limit
                return QuotaUsage(used=user.quota_used, limit=limit)

    def pending(self, user_id: str) -> List[Reservation]:
        """Reservations of user_id that are neither committed nor released."""
        return [r for r in self._pending.values() if r.user_id == user_id]

    async def reconcile(self, user_id: str, measure: Callable[[], Awaitable[int]]) -> bool:
        """
        Reset quota_used to ``await measure()`` when the user has no pending
        reservation. Returns False (and changes nothing) otherwise.
        """
        async with self._locks[user_id]:
            if self.pending(user_id):
                return False
            actual = await measure()
            async with self._db.transaction() as session:
                user = await session.get(User, user_id)
                if user is None:
                    raise NotFound(f"No such user: {user_id}")
                if user.quota_used != actual:
                    log.warning(
                        "Quota drift for user=%s: counter=%d actual=%d",
                        user_id, user.quota_used, actual,
                    )
                    user.quota_used = actual
        return True

    def forget(self, user_id: str) -> None:
        """Drop per-user bookkeeping after the user was deleted."""
        for rid in [r.id for r in self.pending(user_id)]:
            self._pending.pop(rid, None)
        self._locks.pop(user_id, None)
