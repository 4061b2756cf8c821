"""AccessGate: authorizes and executes every storage operation.

Order of side effects for a mutation: validate session -> resolve path ->
reserve quota -> touch storage -> commit (or release on any failure,
cancellation included). Bytes freed by deletes, moves and shrinking
overwrites are credited after the storage step succeeded.
"""

import asyncio
import logging
from typing import AsyncIterator, Awaitable, Callable, List, Optional, Tuple, TypeVar

from davbox.auth.sessions import Clock, IssuedSession, SessionManager
from davbox.config import Settings
from davbox.db.session import Database
from davbox.errors import (
    Conflict,
    Forbidden,
    NotFound,
    PreconditionFailed,
    SessionError,
    Unauthorized,
)
from davbox.files.models import StorageEntry
from davbox.files.paths import PathResolver, normalize
from davbox.files.quota import QuotaLedger, QuotaUsage
from davbox.files.store import Content, StorageStore, shielded
from davbox.files.thumbnails import (
    REMOVED,
    WRITTEN,
    ThumbnailHook,
    ThumbnailNotifier,
    wants_thumbnail,
)
from davbox.users.models import User

log = logging.getLogger(__name__)

T = TypeVar("T")


def _check_preconditions(
    existing: Optional[StorageEntry], if_match: Optional[str], if_none_match: bool = False
) -> None:
    """Optimistic concurrency on version tags. A mismatch raises PreconditionFailed."""
    if if_match is not None and if_match != "*":
        if existing is None or existing.version != if_match:
            raise PreconditionFailed("Version tag does not match")
    if if_match == "*" and existing is None:
        raise PreconditionFailed("Resource does not exist")
    if if_none_match and existing is not None:
        raise PreconditionFailed("Resource already exists")


class AccessGate:
    def __init__(
        self,
        sessions: SessionManager,
        resolver: PathResolver,
        ledger: QuotaLedger,
        store: StorageStore,
        thumbnails: Optional[ThumbnailNotifier] = None,
    ) -> None:
        self.sessions = sessions
        self.resolver = resolver
        self.ledger = ledger
        self.store = store
        self.thumbnails = thumbnails or ThumbnailNotifier(enabled=False)

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        database: Database,
        clock: Optional[Clock] = None,
        thumbnail_hook: Optional[ThumbnailHook] = None,
    ) -> "AccessGate":
        """Wire all components from one Settings instance."""
        resolver = PathResolver(settings)
        return cls(
            sessions=SessionManager(settings, database, clock=clock),
            resolver=resolver,
            ledger=QuotaLedger(database),
            store=StorageStore(database, resolver),
            thumbnails=ThumbnailNotifier(thumbnail_hook, enabled=settings.enable_thumbnails),
        )

    async def _user(self, token: str, owner: Optional[str] = None) -> User:
        try:
            user = await self.sessions.validate(token)
        except SessionError as e:
            raise Unauthorized(e.message) from e
        if owner is not None and owner != user.id:
            log.warning("user=%s attempted access to files of owner=%s", user.id, owner)
            raise Forbidden("Cannot access another user's files")
        return user

    async def _resolve(self, user_id: str, path: str) -> str:
        canonical = normalize(path)
        await asyncio.to_thread(self.resolver.locate, user_id, canonical)
        return canonical

    async def _existing(self, user_id: str, path: str) -> Optional[StorageEntry]:
        try:
            return await self.store.stat(user_id, path)
        except NotFound:
            return None

    async def _release(self, reservation_id: str) -> None:
        # Must complete even when the request is being cancelled
        await asyncio.shield(self.ledger.release(reservation_id))

    async def _settle(
        self,
        user_id: str,
        reservation_id: str,
        step: Awaitable[T],
        freed: Callable[[T], int] = lambda _: 0,
    ) -> T:
        """
        Run a storage step, then settle its reservation: release it if the
        step failed, otherwise credit what the step freed and commit. Callers
        run this under shielded() so storage and ledger never disagree.
        """
        try:
            result = await step
        except BaseException:
            await self.ledger.release(reservation_id)
            raise
        try:
            returned = freed(result)
            if returned > 0:
                await self.ledger.credit(user_id, returned)
        finally:
            await self.ledger.commit(reservation_id)
        return result

    async def _images_under(self, user_id: str, path: str) -> List[str]:
        if not self.thumbnails.enabled:
            return []
        return [p for p in await self.store.files_under(user_id, path) if wants_thumbnail(p)]

    async def authenticate(self, login: str, password: str) -> IssuedSession:
        try:
            return await self.sessions.login(login, password)
        except SessionError as e:
            raise Unauthorized(e.message) from e

    async def logout(self, token: str) -> None:
        try:
            await self.sessions.logout(token)
        except SessionError as e:
            raise Unauthorized(e.message) from e

    async def whoami(self, token: str) -> User:
        return await self._user(token)

    async def stat(self, token: str, path: str, owner: Optional[str] = None) -> StorageEntry:
        user = await self._user(token, owner)
        return await self.store.stat(user.id, await self._resolve(user.id, path))

    async def read(
        self, token: str, path: str, owner: Optional[str] = None
    ) -> Tuple[StorageEntry, bytes]:
        user = await self._user(token, owner)
        canonical = await self._resolve(user.id, path)
        entry = await self.store.stat(user.id, canonical)
        return entry, await self.store.get(user.id, canonical)

    async def open(
        self, token: str, path: str, owner: Optional[str] = None
    ) -> Tuple[StorageEntry, AsyncIterator[bytes]]:
        """Like read(), but streams the content."""
        user = await self._user(token, owner)
        canonical = await self._resolve(user.id, path)
        entry = await self.store.stat(user.id, canonical)
        if entry.is_dir:
            raise Conflict(f"{canonical} is a directory")
        return entry, self.store.iter_content(user.id, canonical)

    async def list(self, token: str, path: str, owner: Optional[str] = None) -> List[StorageEntry]:
        user = await self._user(token, owner)
        return await self.store.list(user.id, await self._resolve(user.id, path))

    async def quota(self, token: str) -> QuotaUsage:
        user = await self._user(token)
        return await self.ledger.usage(user.id)

    async def write(
        self,
        token: str,
        path: str,
        content: Content,
        length: Optional[int] = None,
        owner: Optional[str] = None,
        if_match: Optional[str] = None,
        if_none_match: bool = False,
    ) -> StorageEntry:
        """
        Create or replace a file. Only the growth over the existing file is
        reserved; a streamed body needs its length up front.
        """
        user = await self._user(token, owner)
        canonical = await self._resolve(user.id, path)
        if isinstance(content, (bytes, bytearray, memoryview)):
            length = len(content)
        elif length is None:
            raise ValueError("length is required for streamed content")
        async with self.store.lock(user.id, canonical):
            existing = await self._existing(user.id, canonical)
            _check_preconditions(existing, if_match, if_none_match)
            old_size = existing.size if existing is not None and not existing.is_dir else 0
            delta = length - old_size
            reservation = await self.ledger.reserve(user.id, max(delta, 0))
            try:
                staged = await self.store.stage(user.id, canonical, content, expected_size=length)
            except BaseException:
                await self._release(reservation)
                raise
            entry = await shielded(
                self._settle(user.id, reservation, self.store.publish(staged), lambda _: -delta)
            )
        log.info("write user=%s path=%s size=%d delta=%d", user.id, canonical, length, delta)
        self.thumbnails.notify(WRITTEN, user.id, entry.path)
        return entry

    async def mkdir(self, token: str, path: str, owner: Optional[str] = None) -> StorageEntry:
        user = await self._user(token, owner)
        canonical = await self._resolve(user.id, path)
        async with self.store.lock(user.id, canonical):
            reservation = await self.ledger.reserve(user.id, 0)
            return await shielded(
                self._settle(user.id, reservation, self.store.mkdir(user.id, canonical))
            )

    async def delete(
        self,
        token: str,
        path: str,
        owner: Optional[str] = None,
        if_match: Optional[str] = None,
    ) -> int:
        """Delete a file or directory tree; returns the bytes given back to the quota."""
        user = await self._user(token, owner)
        canonical = await self._resolve(user.id, path)
        async with self.store.lock(user.id, canonical):
            existing = await self.store.stat(user.id, canonical)
            _check_preconditions(existing, if_match)
            images = await self._images_under(user.id, canonical)
            # Zero-byte reservation marks the user busy so reconcile() waits
            reservation = await self.ledger.reserve(user.id, 0)
            freed = await shielded(
                self._settle(
                    user.id, reservation, self.store.delete(user.id, canonical), lambda n: n
                )
            )
        for image in images:
            self.thumbnails.notify(REMOVED, user.id, image)
        return freed

    async def move(
        self,
        token: str,
        src: str,
        dst: str,
        owner: Optional[str] = None,
        dest_owner: Optional[str] = None,
        overwrite: bool = True,
        if_match: Optional[str] = None,
    ) -> StorageEntry:
        user = await self._user(token, owner)
        if dest_owner is not None and dest_owner != user.id:
            log.warning("user=%s attempted move into files of owner=%s", user.id, dest_owner)
            raise Forbidden("Cannot move between different owners")
        source = await self._resolve(user.id, src)
        dest = await self._resolve(user.id, dst)
        async with self.store.lock(user.id, source, dest):
            existing = await self.store.stat(user.id, source)
            _check_preconditions(existing, if_match)
            moved = await self._images_under(user.id, source)
            replaced = await self._images_under(user.id, dest) if overwrite else []
            reservation = await self.ledger.reserve(user.id, 0)
            entry, _ = await shielded(
                self._settle(
                    user.id,
                    reservation,
                    self.store.move(
                        user.id, source, dest, dest_owner=dest_owner, overwrite=overwrite
                    ),
                    lambda result: result[1],
                )
            )
        renamed = [(image, dest + image[len(source):]) for image in moved]
        arriving = {new for _, new in renamed}
        for image in replaced:
            if image not in arriving:
                self.thumbnails.notify(REMOVED, user.id, image)
        for old, new in renamed:
            self.thumbnails.notify(REMOVED, user.id, old)
            self.thumbnails.notify(WRITTEN, user.id, new)
        return entry

    async def reconcile(self, user_id: str) -> bool:
        """Resync a user's quota counter with stored metadata (admin tool)."""
        return await self.ledger.reconcile(user_id, lambda: self.store.used_bytes(user_id))
