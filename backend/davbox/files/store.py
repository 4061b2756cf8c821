"""File and directory storage: atomic writes on disk, metadata in the database."""

import asyncio
import hashlib
import logging
import os
import shutil
import uuid
import weakref
from contextlib import asynccontextmanager, contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import (
    AsyncIterable,
    AsyncIterator,
    Awaitable,
    List,
    Optional,
    Tuple,
    TypeVar,
    Union,
)

import aiofiles
import aiofiles.os
from sqlalchemy import delete, func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from davbox.db.session import Database
from davbox.errors import Conflict, DavboxError, Forbidden, NotFound, StorageIOFailure
from davbox.files.models import DIRECTORY, FILE, StorageEntry, new_version
from davbox.files.paths import TEMP_SUFFIX, PathResolver, canonicalize, is_within, parent_of

log = logging.getLogger(__name__)

CHUNK_SIZE = 64 * 1024

Content = Union[bytes, AsyncIterable[bytes]]

T = TypeVar("T")


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _scratch_name(target: Path) -> Path:
    """Sibling of target (same filesystem, so os.replace is atomic) with a reserved suffix."""
    return target.with_name(f".{target.name}.{uuid.uuid4().hex[:12]}{TEMP_SUFFIX}")


async def shielded(aw: Awaitable[T]) -> T:
    """
    Run aw to completion even if the caller is cancelled meanwhile. The
    cancellation is re-raised once aw has finished, so disk and metadata
    changes are never split by it.
    """
    task = asyncio.ensure_future(aw)
    try:
        return await asyncio.shield(task)
    except asyncio.CancelledError:
        if task.done():
            raise
        await asyncio.wait([task])
        if not task.cancelled():
            # Retrieved so it is not reported as lost; the cancellation wins
            task.exception()
        raise


@contextmanager
def _io_errors(action: str, path: str):
    """Turn OSError into StorageIOFailure; typed storage errors pass through."""
    try:
        yield
    except DavboxError:
        raise
    except (NotADirectoryError, FileExistsError) as e:
        raise Conflict(f"{action} failed for {path}: a parent is not a directory") from e
    except OSError as e:
        log.error("%s failed for %s: %s", action, path, e)
        raise StorageIOFailure(f"{action} failed for {path}: {e.strerror or e}") from e


async def _chunks(content: Content) -> AsyncIterator[bytes]:
    if isinstance(content, (bytes, bytearray, memoryview)):
        data = bytes(content)
        for i in range(0, len(data), CHUNK_SIZE):
            yield data[i : i + CHUNK_SIZE]
        return
    async for chunk in content:
        if chunk:
            yield chunk


async def _discard(path: Path) -> None:
    """Remove a scratch file or tree; a missing path is fine."""
    try:
        if await aiofiles.os.path.isdir(path):
            await asyncio.to_thread(shutil.rmtree, path)
        else:
            await aiofiles.os.remove(path)
    except FileNotFoundError:
        pass
    except OSError as e:
        log.warning("Could not remove scratch path %s: %s", path, e)


async def _lexists(path: Path) -> bool:
    return await aiofiles.os.path.exists(path) or await aiofiles.os.path.islink(path)


async def _undo_renames(steps: List[Tuple[Path, Path]]) -> None:
    """Reverse (src, dst) renames, newest first. Renames that never happened are skipped."""
    for src, dst in reversed(steps):
        try:
            if await _lexists(dst):
                await aiofiles.os.rename(dst, src)
        except OSError as e:
            log.error("Could not move %s back to %s: %s", dst, src, e)


async def _put_back(target: Path, backup: Optional[Path]) -> None:
    """Undo replacing target: restore the backup, or drop a file that did not exist before."""
    try:
        if backup is not None:
            await aiofiles.os.rename(backup, target)
        else:
            await aiofiles.os.remove(target)
    except FileNotFoundError:
        pass
    except OSError as e:
        log.error("Could not restore %s: %s", target, e)


def _subtree(owner_id: str, path: str):
    """WHERE clause for path itself and everything below it."""
    return (
        StorageEntry.owner_id == owner_id,
        or_(
            StorageEntry.path == path,
            StorageEntry.path.startswith(path + "/", autoescape=True),
        ),
    )


@dataclass(frozen=True)
class StagedFile:
    """Upload written to a scratch file and fsynced, not yet visible."""

    user_id: str
    path: str
    target: Path
    scratch: Path
    digest: str
    size: int


class StorageStore:
    """
    CRUD over each user's files and directories.

    Content lives under the user's storage root; metadata (size, mtime,
    version tag, content hash) lives in the ``entries`` table. Writes go to a
    scratch file next to the target. Publishing swaps it in with os.replace
    inside the metadata transaction and puts the old file back if that
    transaction fails, so readers see either the old or the new content.
    """

    def __init__(self, database: Database, resolver: PathResolver) -> None:
        self._db = database
        self._resolver = resolver
        self._path_locks: "weakref.WeakValueDictionary[Tuple[str, str], asyncio.Lock]" = (
            weakref.WeakValueDictionary()
        )

    @asynccontextmanager
    async def lock(self, user_id: str, *paths: str):
        """Serialize writers of the given paths (acquired in sorted order)."""
        held = []
        for key in sorted({(user_id, canonicalize(p)) for p in paths}):
            lock = self._path_locks.get(key)
            if lock is None:
                lock = asyncio.Lock()
                self._path_locks[key] = lock
            held.append(lock)
        acquired = []
        try:
            for lock in held:
                await lock.acquire()
                acquired.append(lock)
            yield
        finally:
            for lock in reversed(acquired):
                lock.release()

    async def _locate(self, user_id: str, path: str) -> Path:
        # Symlink resolution stats every component
        return await asyncio.to_thread(self._resolver.locate, user_id, path)

    async def ensure_root(self, user_id: str) -> Path:
        """Create the user's storage root on disk if needed."""
        root = self._resolver.storage_root_for(user_id)
        with _io_errors("mkdir", "/"):
            await aiofiles.os.makedirs(root, exist_ok=True)
        return root

    async def remove_root(self, user_id: str) -> None:
        """Delete the user's whole storage tree from disk (metadata cascades with the user)."""
        root = self._resolver.storage_root_for(user_id)
        if not await aiofiles.os.path.exists(root):
            return
        trash = root.with_name(f".{root.name}.{uuid.uuid4().hex[:12]}{TEMP_SUFFIX}")
        with _io_errors("delete", "/"):
            await aiofiles.os.rename(root, trash)
        await _discard(trash)
        log.info("Removed storage root of user=%s", user_id)

    async def _root_entry(self, user_id: str) -> StorageEntry:
        root = await self.ensure_root(user_id)
        with _io_errors("stat", "/"):
            st = await aiofiles.os.stat(root)
        return StorageEntry(
            owner_id=user_id,
            path="/",
            parent="/",
            kind=DIRECTORY,
            size=0,
            modified_at=datetime.fromtimestamp(st.st_mtime, tz=timezone.utc),
            version=f"{st.st_mtime_ns:x}",
        )

    async def _find(self, session: AsyncSession, user_id: str, path: str) -> Optional[StorageEntry]:
        if path == "/":
            return await self._root_entry(user_id)
        return await session.get(StorageEntry, (user_id, path))

    async def _ensure_parents(self, session: AsyncSession, user_id: str, path: str, now: datetime) -> None:
        """Create directory entries (and folders) for every missing ancestor of path."""
        parent = parent_of(path)
        if parent == "/":
            return
        with _io_errors("mkdir", parent):
            await aiofiles.os.makedirs(await self._locate(user_id, parent), exist_ok=True)
        segments = parent.strip("/").split("/")
        for i in range(1, len(segments) + 1):
            ancestor = "/" + "/".join(segments[:i])
            row = await session.get(StorageEntry, (user_id, ancestor))
            if row is None:
                session.add(
                    StorageEntry(
                        owner_id=user_id,
                        path=ancestor,
                        parent=parent_of(ancestor),
                        kind=DIRECTORY,
                        size=0,
                        modified_at=now,
                        version=new_version(),
                    )
                )
            elif not row.is_dir:
                raise Conflict(f"Parent {ancestor} is a file")

    async def _write_scratch(
        self, scratch: Path, content: Content, expected_size: Optional[int]
    ) -> Tuple[str, int]:
        """Stream content into scratch and fsync it. Returns (sha256 hex, size)."""
        hasher = hashlib.sha256()
        size = 0
        try:
            async with aiofiles.open(scratch, "wb") as f:
                async for chunk in _chunks(content):
                    size += len(chunk)
                    if expected_size is not None and size > expected_size:
                        raise StorageIOFailure(
                            f"Body is larger than the announced {expected_size} bytes"
                        )
                    hasher.update(chunk)
                    await f.write(chunk)
                await f.flush()
                await asyncio.to_thread(os.fsync, f.fileno())
            if expected_size is not None and size != expected_size:
                raise StorageIOFailure(
                    f"Body has {size} bytes, {expected_size} were announced"
                )
        except BaseException:
            await _discard(scratch)
            raise
        return hasher.hexdigest(), size

    async def stage(
        self,
        user_id: str,
        path: str,
        content: Content,
        expected_size: Optional[int] = None,
    ) -> StagedFile:
        """
        First half of put(): receive the body into a scratch file. May be
        cancelled at any point; nothing visible changes.
        """
        canonical = canonicalize(path)
        if canonical == "/":
            raise Conflict("Cannot write to the root collection")
        target = await self._locate(user_id, canonical)
        async with self._db.session() as session:
            existing = await session.get(StorageEntry, (user_id, canonical))
            if existing is not None and existing.is_dir:
                raise Conflict(f"{canonical} is a directory")
        await self.ensure_root(user_id)
        with _io_errors("mkdir", parent_of(canonical)):
            await aiofiles.os.makedirs(target.parent, exist_ok=True)
        scratch = _scratch_name(target)
        with _io_errors("write", canonical):
            digest, size = await self._write_scratch(scratch, content, expected_size)
        return StagedFile(user_id, canonical, target, scratch, digest, size)

    async def publish(self, staged: StagedFile) -> StorageEntry:
        """
        Second half of put(): swap the scratch file in and record the new
        metadata as one step. If the transaction fails after the swap, the
        previous file is restored from a hard link taken beforehand.
        Callers run this under shielded().
        """
        user_id, canonical, target = staged.user_id, staged.path, staged.target
        backup = None
        swapped = False
        try:
            with _io_errors("write", canonical):
                async with self._db.transaction() as session:
                    now = _now()
                    entry = await session.get(StorageEntry, (user_id, canonical))
                    if entry is not None and entry.is_dir:
                        raise Conflict(f"{canonical} is a directory")
                    await self._ensure_parents(session, user_id, canonical, now)
                    if entry is None:
                        entry = StorageEntry(
                            owner_id=user_id,
                            path=canonical,
                            parent=parent_of(canonical),
                            kind=FILE,
                        )
                        session.add(entry)
                    entry.size = staged.size
                    entry.modified_at = now
                    entry.version = new_version()
                    entry.content_hash = staged.digest
                    await session.flush()
                    if await aiofiles.os.path.isfile(target):
                        backup = _scratch_name(target)
                        await aiofiles.os.link(target, backup)
                    swapped = True
                    await aiofiles.os.replace(staged.scratch, target)
        except BaseException:
            if swapped:
                await _put_back(target, backup)
            await _discard(staged.scratch)
            if backup is not None:
                await _discard(backup)
            raise
        if backup is not None:
            await _discard(backup)
        log.info(
            "put user=%s path=%s size=%d version=%s", user_id, canonical, entry.size, entry.version
        )
        return entry

    async def put(
        self,
        user_id: str,
        path: str,
        content: Content,
        expected_size: Optional[int] = None,
    ) -> StorageEntry:
        """
        Create or replace a file. All-or-nothing: on any failure (including
        cancellation) the scratch file is removed and the previous entry, if
        any, is unchanged. Missing parent directories are created.
        """
        staged = await self.stage(user_id, path, content, expected_size=expected_size)
        return await shielded(self.publish(staged))

    async def stat(self, user_id: str, path: str) -> StorageEntry:
        canonical = canonicalize(path)
        await self._locate(user_id, canonical)
        async with self._db.session() as session:
            entry = await self._find(session, user_id, canonical)
        if entry is None:
            raise NotFound(f"Not found: {canonical}")
        return entry

    async def get(self, user_id: str, path: str) -> bytes:
        """Return the full content of a file."""
        chunks = []
        async for chunk in self.iter_content(user_id, path):
            chunks.append(chunk)
        return b"".join(chunks)

    async def iter_content(
        self, user_id: str, path: str, chunk_size: int = CHUNK_SIZE
    ) -> AsyncIterator[bytes]:
        """Stream a file's content in chunks."""
        entry = await self.stat(user_id, path)
        if entry.is_dir:
            raise Conflict(f"{entry.path} is a directory")
        target = await self._locate(user_id, entry.path)
        with _io_errors("read", entry.path):
            async with aiofiles.open(target, "rb") as f:
                while True:
                    chunk = await f.read(chunk_size)
                    if not chunk:
                        break
                    yield chunk

    async def files_under(self, user_id: str, path: str) -> List[str]:
        """Paths of the files at or below path, from metadata."""
        canonical = canonicalize(path)
        async with self._db.session() as session:
            rows = await session.execute(
                select(StorageEntry.path)
                .where(*_subtree(user_id, canonical), StorageEntry.kind == FILE)
                .order_by(StorageEntry.path)
            )
        return list(rows.scalars().all())

    async def mkdir(self, user_id: str, path: str) -> StorageEntry:
        """Create a directory (and missing parents). An existing path raises Conflict."""
        canonical = canonicalize(path)
        if canonical == "/":
            raise Conflict("The root collection already exists")
        target = await self._locate(user_id, canonical)
        await self.ensure_root(user_id)
        return await shielded(self._mkdir(user_id, canonical, target))

    async def _mkdir(self, user_id: str, canonical: str, target: Path) -> StorageEntry:
        with _io_errors("mkdir", canonical):
            async with self._db.transaction() as session:
                if await session.get(StorageEntry, (user_id, canonical)) is not None:
                    raise Conflict(f"{canonical} already exists")
                now = _now()
                await self._ensure_parents(session, user_id, canonical, now)
                entry = StorageEntry(
                    owner_id=user_id,
                    path=canonical,
                    parent=parent_of(canonical),
                    kind=DIRECTORY,
                    size=0,
                    modified_at=now,
                    version=new_version(),
                )
                session.add(entry)
                await session.flush()
                await aiofiles.os.makedirs(target, exist_ok=True)
        log.info("mkdir user=%s path=%s", user_id, canonical)
        return entry

    async def _drop_rows(self, session: AsyncSession, user_id: str, path: str) -> int:
        """Delete metadata of path and its descendants; return the bytes they held."""
        freed = (
            await session.execute(
                select(func.coalesce(func.sum(StorageEntry.size), 0)).where(
                    *_subtree(user_id, path), StorageEntry.kind == FILE
                )
            )
        ).scalar_one()
        await session.execute(
            delete(StorageEntry)
            .where(*_subtree(user_id, path))
            .execution_options(synchronize_session=False)
        )
        return int(freed)

    async def delete(self, user_id: str, path: str) -> int:
        """
        Delete a file or, recursively, a directory. Returns the bytes freed
        (summed from metadata) so the caller can credit the quota.
        """
        canonical = canonicalize(path)
        if canonical == "/":
            raise Forbidden("Cannot delete the root collection")
        target = await self._locate(user_id, canonical)
        return await shielded(self._delete(user_id, canonical, target))

    async def _delete(self, user_id: str, canonical: str, target: Path) -> int:
        trash = _scratch_name(target)
        steps: List[Tuple[Path, Path]] = []
        try:
            with _io_errors("delete", canonical):
                async with self._db.transaction() as session:
                    if await session.get(StorageEntry, (user_id, canonical)) is None:
                        raise NotFound(f"Not found: {canonical}")
                    freed = await self._drop_rows(session, user_id, canonical)
                    await session.flush()
                    # Rename first so the subtree disappears in one step
                    steps.append((target, trash))
                    await aiofiles.os.rename(target, trash)
        except BaseException:
            await _undo_renames(steps)
            raise
        await _discard(trash)
        log.info("delete user=%s path=%s freed=%d", user_id, canonical, freed)
        return freed

    async def move(
        self,
        user_id: str,
        src: str,
        dst: str,
        dest_owner: Optional[str] = None,
        overwrite: bool = True,
    ) -> Tuple[StorageEntry, int]:
        """
        Rename src to dst inside one user's tree. Returns (moved entry, bytes
        freed by an overwritten destination). Every moved entry gets a new
        version tag.
        """
        if dest_owner is not None and dest_owner != user_id:
            raise Forbidden("Cannot move between different owners")
        source = canonicalize(src)
        dest = canonicalize(dst)
        if source == "/" or dest == "/":
            raise Forbidden("Cannot move the root collection")
        if source == dest:
            raise Conflict("Source and destination are the same")
        if is_within(dest, source):
            raise Conflict("Cannot move a collection into itself")
        if is_within(source, dest):
            raise Conflict("Cannot replace an ancestor of the source")
        src_abs = await self._locate(user_id, source)
        dst_abs = await self._locate(user_id, dest)
        return await shielded(self._move(user_id, source, dest, src_abs, dst_abs, overwrite))

    async def _move(
        self,
        user_id: str,
        source: str,
        dest: str,
        src_abs: Path,
        dst_abs: Path,
        overwrite: bool,
    ) -> Tuple[StorageEntry, int]:
        trash = None
        steps: List[Tuple[Path, Path]] = []
        try:
            with _io_errors("move", source):
                async with self._db.transaction() as session:
                    entry = await session.get(StorageEntry, (user_id, source))
                    if entry is None:
                        raise NotFound(f"Not found: {source}")
                    freed = 0
                    replaced = await session.get(StorageEntry, (user_id, dest))
                    if replaced is not None:
                        if not overwrite:
                            raise Conflict(f"{dest} already exists")
                        freed = await self._drop_rows(session, user_id, dest)
                        session.expunge(replaced)
                    await self._ensure_parents(session, user_id, dest, _now())
                    rows = (
                        await session.execute(select(StorageEntry).where(*_subtree(user_id, source)))
                    ).scalars().all()
                    for row in rows:
                        row.path = dest + row.path[len(source):]
                        row.parent = parent_of(row.path)
                        row.version = new_version()
                    await session.flush()
                    if replaced is not None or await _lexists(dst_abs):
                        trash = _scratch_name(dst_abs)
                        steps.append((dst_abs, trash))
                        await aiofiles.os.rename(dst_abs, trash)
                    steps.append((src_abs, dst_abs))
                    await aiofiles.os.rename(src_abs, dst_abs)
        except BaseException:
            await _undo_renames(steps)
            raise
        if trash is not None:
            await _discard(trash)
        log.info("move user=%s %s -> %s freed=%d", user_id, source, dest, freed)
        return entry, freed

    async def list(self, user_id: str, dir_path: str) -> List[StorageEntry]:
        """Direct children of a directory, read in one query. A file lists itself."""
        canonical = canonicalize(dir_path)
        await self._locate(user_id, canonical)
        async with self._db.session() as session:
            if canonical != "/":
                entry = await session.get(StorageEntry, (user_id, canonical))
                if entry is None:
                    raise NotFound(f"Not found: {canonical}")
                if not entry.is_dir:
                    return [entry]
            rows = (
                await session.execute(
                    select(StorageEntry)
                    .where(
                        StorageEntry.owner_id == user_id,
                        StorageEntry.parent == canonical,
                        StorageEntry.path != "/",
                    )
                    .order_by(StorageEntry.path)
                )
            ).scalars().all()
        return list(rows)

    async def used_bytes(self, user_id: str) -> int:
        """Total file size of a user according to metadata."""
        async with self._db.session() as session:
            total = (
                await session.execute(
                    select(func.coalesce(func.sum(StorageEntry.size), 0)).where(
                        StorageEntry.owner_id == user_id, StorageEntry.kind == FILE
                    )
                )
            ).scalar_one()
        return int(total)
