"""Tests for the access gate: authorization, quota accounting around storage, notifications."""

import asyncio
import threading
from unittest.mock import AsyncMock

import pytest

from davbox.errors import (
    Conflict,
    Forbidden,
    InvalidPath,
    NotFound,
    PreconditionFailed,
    QuotaExceeded,
    StorageIOFailure,
    Unauthorized,
)
from davbox.files.thumbnails import REMOVED, WRITTEN
from davbox.gate import AccessGate


async def _usage(gate, user_id="alice"):
    return (await gate.ledger.usage(user_id)).used


@pytest.mark.asyncio
async def test_write_over_quota_is_rejected_and_smaller_write_fits(gate, make_user, login):
    await make_user("alice", quota_limit=1000)
    token = await login("alice")
    await gate.write(token, "/base.bin", b"x" * 900)
    with pytest.raises(QuotaExceeded):
        await gate.write(token, "/big.bin", b"y" * 150)
    with pytest.raises(NotFound):
        await gate.stat(token, "/big.bin")
    assert await _usage(gate) == 900
    await gate.write(token, "/small.bin", b"z" * 50)
    usage = await gate.quota(token)
    assert usage.used == 950
    assert usage.free == 50
    assert gate.ledger.pending("alice") == []


@pytest.mark.asyncio
async def test_overwrite_reserves_only_growth(gate, make_user, login):
    await make_user("alice", quota_limit=100)
    token = await login("alice")
    await gate.write(token, "/a.bin", b"a" * 80)
    # 90 bytes total would not fit as a new file, but only 10 bytes are new
    await gate.write(token, "/a.bin", b"b" * 90)
    assert await _usage(gate) == 90


@pytest.mark.asyncio
async def test_shrinking_overwrite_credits(gate, make_user, login):
    await make_user("alice", quota_limit=100)
    token = await login("alice")
    await gate.write(token, "/a.bin", b"a" * 80)
    await gate.write(token, "/a.bin", b"b" * 30)
    assert await _usage(gate) == 30
    assert (await gate.read(token, "/a.bin"))[1] == b"b" * 30


@pytest.mark.asyncio
async def test_failed_write_releases_reservation(gate, make_user, login):
    await make_user("alice", quota_limit=1000)
    token = await login("alice")

    async def broken():
        yield b"half"
        raise OSError(5, "Input/output error")

    with pytest.raises(StorageIOFailure):
        await gate.write(token, "/a.bin", broken(), length=500)
    assert await _usage(gate) == 0
    assert gate.ledger.pending("alice") == []


@pytest.mark.asyncio
async def test_cancelled_write_releases_reservation(gate, make_user, login):
    await make_user("alice", quota_limit=1000)
    token = await login("alice")
    started = asyncio.Event()

    async def slow():
        yield b"x" * 10
        started.set()
        await asyncio.sleep(3600)
        yield b"never"

    task = asyncio.create_task(gate.write(token, "/a.bin", slow(), length=600))
    await started.wait()
    assert len(gate.ledger.pending("alice")) == 1
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task
    assert gate.ledger.pending("alice") == []
    assert await _usage(gate) == 0
    # The freed room is usable again
    await gate.write(token, "/b.bin", b"y" * 1000)


@pytest.mark.asyncio
async def test_streamed_write_needs_length(gate, make_user, login):
    await make_user("alice")
    token = await login("alice")

    async def body():
        yield b"data"

    with pytest.raises(ValueError):
        await gate.write(token, "/a.bin", body())


@pytest.mark.asyncio
async def test_concurrent_writes_never_exceed_limit(gate, make_user, login):
    await make_user("alice", quota_limit=1000)
    token = await login("alice")
    results = await asyncio.gather(
        *(gate.write(token, f"/f{i}.bin", b"x" * 100) for i in range(15)),
        return_exceptions=True,
    )
    written = [r for r in results if not isinstance(r, Exception)]
    refused = [r for r in results if isinstance(r, QuotaExceeded)]
    assert len(written) == 10
    assert len(refused) == 5
    assert await _usage(gate) == 1000
    assert await gate.store.used_bytes("alice") == 1000


@pytest.mark.asyncio
async def test_delete_credits_quota(gate, make_user, login):
    await make_user("alice", quota_limit=1000)
    token = await login("alice")
    await gate.write(token, "/d/a.bin", b"a" * 300)
    await gate.write(token, "/d/b.bin", b"b" * 200)
    await gate.write(token, "/c.bin", b"c" * 100)
    assert await gate.delete(token, "/d") == 500
    assert await _usage(gate) == 100
    with pytest.raises(NotFound):
        await gate.delete(token, "/d")
    assert await _usage(gate) == 100


@pytest.mark.asyncio
async def test_invalid_or_missing_session_is_unauthorized(gate, make_user, login, clock, settings):
    await make_user("alice")
    with pytest.raises(Unauthorized):
        await gate.write("not-a-token", "/a.bin", b"x")
    token = await login("alice")
    await gate.write(token, "/a.bin", b"x")
    clock.advance(settings.session_timeout_seconds)
    with pytest.raises(Unauthorized):
        await gate.read(token, "/a.bin")
    with pytest.raises(Unauthorized):
        await gate.authenticate("alice", "wrong-password")


@pytest.mark.asyncio
async def test_logout_then_access_is_unauthorized(gate, make_user, login):
    await make_user("alice")
    token = await login("alice")
    await gate.logout(token)
    with pytest.raises(Unauthorized):
        await gate.list(token, "/")
    with pytest.raises(Unauthorized):
        await gate.logout(token)


@pytest.mark.asyncio
async def test_other_owner_is_forbidden(gate, make_user, login):
    await make_user("alice")
    await make_user("bob")
    alice = await login("alice")
    bob = await login("bob")
    await gate.write(bob, "/private.txt", b"bob")
    with pytest.raises(Forbidden):
        await gate.read(alice, "/private.txt", owner="bob")
    with pytest.raises(Forbidden):
        await gate.write(alice, "/x.txt", b"x", owner="bob")
    # Without an explicit owner, a token only ever sees its own tree
    with pytest.raises(NotFound):
        await gate.read(alice, "/private.txt")


@pytest.mark.asyncio
async def test_traversal_is_invalid_path(gate, make_user, login):
    await make_user("alice")
    token = await login("alice")
    with pytest.raises(InvalidPath):
        await gate.write(token, "/../bob/x.txt", b"x")
    with pytest.raises(InvalidPath):
        await gate.read(token, "/%2e%2e/%2e%2e/etc/passwd")
    assert gate.ledger.pending("alice") == []


@pytest.mark.asyncio
async def test_move_changes_version_and_rejects_cross_owner(gate, make_user, login):
    await make_user("alice")
    await make_user("bob")
    token = await login("alice")
    written = await gate.write(token, "/a.txt", b"hello")
    moved = await gate.move(token, "/a.txt", "/b.txt")
    assert moved.path == "/b.txt"
    assert moved.version != written.version
    with pytest.raises(Forbidden):
        await gate.move(token, "/b.txt", "/b.txt", dest_owner="bob")
    assert (await gate.read(token, "/b.txt"))[1] == b"hello"


@pytest.mark.asyncio
async def test_move_over_existing_credits_replaced(gate, make_user, login):
    await make_user("alice", quota_limit=1000)
    token = await login("alice")
    await gate.write(token, "/a.txt", b"a" * 100)
    await gate.write(token, "/b.txt", b"b" * 400)
    with pytest.raises(Conflict):
        await gate.move(token, "/a.txt", "/b.txt", overwrite=False)
    await gate.move(token, "/a.txt", "/b.txt")
    assert await _usage(gate) == 100


@pytest.mark.asyncio
async def test_if_match_preconditions(gate, make_user, login):
    await make_user("alice")
    token = await login("alice")
    first = await gate.write(token, "/a.txt", b"one")
    second = await gate.write(token, "/a.txt", b"two", if_match=first.version)
    with pytest.raises(PreconditionFailed):
        await gate.write(token, "/a.txt", b"three", if_match=first.version)
    with pytest.raises(PreconditionFailed):
        await gate.write(token, "/a.txt", b"three", if_none_match=True)
    with pytest.raises(PreconditionFailed):
        await gate.write(token, "/new.txt", b"x", if_match="*")
    with pytest.raises(PreconditionFailed):
        await gate.delete(token, "/a.txt", if_match=first.version)
    assert await gate.delete(token, "/a.txt", if_match=second.version) == 3


def test_precondition_failed_is_a_conflict():
    assert issubclass(PreconditionFailed, Conflict)
    assert PreconditionFailed().kind == "Conflict"


@pytest.mark.asyncio
async def test_mkdir_and_list(gate, make_user, login):
    await make_user("alice")
    token = await login("alice")
    await gate.mkdir(token, "/photos")
    await gate.write(token, "/photos/a.jpg", b"jpg")
    entries = await gate.list(token, "/photos")
    assert [e.path for e in entries] == ["/photos/a.jpg"]
    with pytest.raises(Conflict):
        await gate.mkdir(token, "/photos")
    assert gate.ledger.pending("alice") == []


@pytest.mark.asyncio
async def test_open_streams_content(gate, make_user, login):
    await make_user("alice")
    token = await login("alice")
    await gate.write(token, "/a.txt", b"streamed")
    entry, chunks = await gate.open(token, "/a.txt")
    assert entry.size == 8
    assert b"".join([c async for c in chunks]) == b"streamed"
    await gate.mkdir(token, "/d")
    with pytest.raises(Conflict):
        await gate.open(token, "/d")


@pytest.mark.asyncio
async def test_reconcile_repairs_drift(gate, make_user, login, database):
    await make_user("alice", quota_limit=1000)
    token = await login("alice")
    await gate.write(token, "/a.bin", b"a" * 120)
    await gate.ledger.credit("alice", 100)
    assert await _usage(gate) == 20
    assert await gate.reconcile("alice") is True
    assert await _usage(gate) == 120


@pytest.mark.asyncio
async def test_thumbnail_notifications(settings, database, clock, make_user):
    events = []

    async def hook(event, user_id, path):
        events.append((event, user_id, path))

    enabled = settings.model_copy(update={"enable_thumbnails": True})
    gate = AccessGate.from_settings(enabled, database, clock=clock, thumbnail_hook=hook)
    await make_user("alice")
    token = (await gate.authenticate("alice", "password123")).token
    await gate.write(token, "/a.jpg", b"img")
    await gate.write(token, "/notes.txt", b"text")
    await gate.move(token, "/a.jpg", "/b.jpg")
    await gate.delete(token, "/b.jpg")
    await gate.thumbnails.drain()
    assert events == [
        (WRITTEN, "alice", "/a.jpg"),
        (REMOVED, "alice", "/a.jpg"),
        (WRITTEN, "alice", "/b.jpg"),
        (REMOVED, "alice", "/b.jpg"),
    ]


@pytest.mark.asyncio
async def test_paths_are_decoded_exactly_once(gate, make_user, login):
    await make_user("alice")
    token = await login("alice")
    entry = await gate.write(token, "/100%2541.txt", b"x")
    assert entry.path == "/100%41.txt"
    assert (await gate.read(token, "/100%2541.txt"))[1] == b"x"
    with pytest.raises(NotFound):
        await gate.stat(token, "/100A.txt")
    assert gate.resolver.locate("alice", entry.path).name == "100%41.txt"


@pytest.mark.asyncio
async def test_store_failure_releases_reservation(gate, make_user, login, monkeypatch):
    """Whatever the store raises, the reservation is rolled back and the error propagates."""
    await make_user("alice", quota_limit=1000)
    token = await login("alice")
    publish = AsyncMock(side_effect=StorageIOFailure("disk gone"))
    monkeypatch.setattr(gate.store, "publish", publish)
    with pytest.raises(StorageIOFailure):
        await gate.write(token, "/a.bin", b"x" * 400)
    publish.assert_awaited_once()
    assert await _usage(gate) == 0
    assert gate.ledger.pending("alice") == []


@pytest.mark.asyncio
async def test_unauthorized_never_touches_ledger(gate, monkeypatch):
    reserve = AsyncMock()
    monkeypatch.setattr(gate.ledger, "reserve", reserve)
    with pytest.raises(Unauthorized):
        await gate.write("bogus", "/a.bin", b"x")
    reserve.assert_not_awaited()


@pytest.mark.asyncio
async def test_thumbnail_notifications_for_trees(settings, database, clock, make_user):
    events = []

    async def hook(event, user_id, path):
        events.append((event, path))

    enabled = settings.model_copy(update={"enable_thumbnails": True})
    gate = AccessGate.from_settings(enabled, database, clock=clock, thumbnail_hook=hook)
    await make_user("alice")
    token = (await gate.authenticate("alice", "password123")).token
    await gate.write(token, "/pics/a.jpg", b"1")
    await gate.write(token, "/pics/readme.txt", b"2")
    await gate.write(token, "/pics/sub/b.png", b"3")
    await gate.write(token, "/old.gif", b"4")
    await gate.thumbnails.drain()
    events.clear()

    await gate.move(token, "/pics", "/album")
    await gate.move(token, "/album/readme.txt", "/old.gif")
    await gate.delete(token, "/album")
    await gate.thumbnails.drain()
    assert events == [
        (REMOVED, "/pics/a.jpg"),
        (WRITTEN, "/album/a.jpg"),
        (REMOVED, "/pics/sub/b.png"),
        (WRITTEN, "/album/sub/b.png"),
        # A text file replacing an image only drops the old thumbnail
        (REMOVED, "/old.gif"),
        (REMOVED, "/album/a.jpg"),
        (REMOVED, "/album/sub/b.png"),
    ]


@pytest.mark.asyncio
async def test_path_checks_run_off_the_event_loop(gate, make_user, login, monkeypatch):
    """Symlink resolution touches the disk, so it runs in a worker thread."""
    await make_user("alice")
    token = await login("alice")
    loop_thread = threading.get_ident()
    threads = []
    real = gate.resolver.locate

    def locate(user_id, path):
        threads.append(threading.get_ident())
        return real(user_id, path)

    monkeypatch.setattr(gate.resolver, "locate", locate)
    await gate.write(token, "/d/a.txt", b"x")
    await gate.stat(token, "/d/a.txt")
    await gate.list(token, "/d")
    await gate.move(token, "/d", "/e")
    await gate.delete(token, "/e")
    assert threads
    assert loop_thread not in threads
