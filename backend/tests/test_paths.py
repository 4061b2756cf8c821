"""Tests for path normalization and per-user path resolution."""

from pathlib import Path

import pytest

from davbox.config import Settings
from davbox.errors import InvalidPath
from davbox.files.paths import (
    PathResolver,
    canonicalize,
    is_within,
    normalize,
    parent_of,
    validate_storage_template,
)


@pytest.fixture
def resolver(tmp_path) -> PathResolver:
    return PathResolver(Settings(storage_path_template=str(tmp_path / "storage" / "%s")))


def test_storage_root_for(tmp_path, resolver) -> None:
    """User root is the template with %s replaced by the user id."""
    assert resolver.storage_root_for("markus@example.org") == tmp_path / "storage" / "markus@example.org"


def test_storage_root_for_rejects_invalid_user_id(resolver) -> None:
    """User id with slash, traversal or empty raises InvalidPath."""
    for bad in ("", "..", ".", "a/b", "../etc", "a\\b", " alice"):
        with pytest.raises(InvalidPath):
            resolver.storage_root_for(bad)


@pytest.mark.parametrize("user_id", ["alice", "bob", "u@x.co"])
def test_resolve_rejects_traversal_for_every_user(resolver, user_id) -> None:
    """../../etc/passwd never resolves, whoever asks."""
    with pytest.raises(InvalidPath):
        resolver.resolve(user_id, "../../etc/passwd")


def test_resolve_rejects_encoded_traversal(resolver) -> None:
    """Percent-encoded dots are decoded before normalization."""
    with pytest.raises(InvalidPath):
        resolver.resolve("alice", "%2e%2e/%2e%2e/etc/passwd")
    with pytest.raises(InvalidPath):
        resolver.resolve("alice", "docs/..%2f..%2fbob")


def test_resolve_safe(tmp_path, resolver) -> None:
    """Safe logical path is resolved under the user root."""
    got = resolver.resolve("alice", "/foo/bar.txt")
    assert got == tmp_path / "storage" / "alice" / "foo" / "bar.txt"


def test_resolve_dot_segments_inside_root(tmp_path, resolver) -> None:
    """.. that stays inside the root is collapsed."""
    got = resolver.resolve("alice", "a/./b/../c.txt")
    assert got == tmp_path / "storage" / "alice" / "a" / "c.txt"


def test_resolve_root(tmp_path, resolver) -> None:
    assert resolver.resolve("alice", "/") == tmp_path / "storage" / "alice"
    assert resolver.resolve("alice", "") == tmp_path / "storage" / "alice"


def test_resolve_rejects_symlink_out_of_root(tmp_path, resolver) -> None:
    """A symlink inside the root that points elsewhere is not followed."""
    root = resolver.storage_root_for("alice")
    root.mkdir(parents=True)
    outside = tmp_path / "outside"
    outside.mkdir()
    (root / "escape").symlink_to(outside, target_is_directory=True)
    with pytest.raises(InvalidPath):
        resolver.resolve("alice", "escape/secret.txt")


def test_resolve_cannot_reach_other_user(resolver) -> None:
    with pytest.raises(InvalidPath):
        resolver.resolve("alice", "../bob/notes.txt")


def test_normalize_decodes_and_collapses() -> None:
    assert normalize("My%20File%20(1).txt") == "/My File (1).txt"
    assert normalize("//a///b/") == "/a/b"
    assert normalize("a\\b") == "/a/b"
    assert normalize("a+b.txt") == "/a+b.txt"


def test_canonicalize_does_not_decode() -> None:
    assert canonicalize("/a%2e%2e/b%20c") == "/a%2e%2e/b%20c"
    assert normalize("/a%252e%252e") == "/a%2e%2e"
    with pytest.raises(InvalidPath):
        canonicalize("/..")


def test_normalize_rejects_control_characters() -> None:
    """NUL bytes and other control characters raise InvalidPath, encoded or not."""
    for bad in ("dir/file\x00name.txt", "file%00.txt", "a%0Ab", "tab\there"):
        with pytest.raises(InvalidPath):
            normalize(bad)


def test_normalize_rejects_invalid_utf8() -> None:
    with pytest.raises(InvalidPath):
        normalize("%ff%fe")


def test_normalize_rejects_reserved_scratch_names() -> None:
    with pytest.raises(InvalidPath):
        normalize("/.a.txt.0123456789ab.davbox-part")


def test_normalize_accepts_unicode() -> None:
    assert normalize("Manual（CN）/äöü é.pdf") == "/Manual（CN）/äöü é.pdf"


def test_logical_path_of_round_trip(resolver) -> None:
    absolute = resolver.resolve("alice", "a/b.txt")
    assert resolver.logical_path_of("alice", absolute) == "/a/b.txt"
    with pytest.raises(InvalidPath):
        resolver.logical_path_of("alice", Path("/etc/passwd"))


def test_parent_of_and_is_within() -> None:
    assert parent_of("/a/b") == "/a"
    assert parent_of("/a") == "/"
    assert parent_of("/") == "/"
    assert is_within("/a/b", "/a")
    assert is_within("/a", "/a")
    assert not is_within("/ab", "/a")
    assert is_within("/anything", "/")


def test_validate_storage_template() -> None:
    validate_storage_template("/data/storage/%s")
    with pytest.raises(ValueError, match="exactly one"):
        validate_storage_template("/data/storage")
    with pytest.raises(ValueError, match="exactly one"):
        validate_storage_template("/data/%s/%s")


def test_resolver_validates_template_at_construction() -> None:
    with pytest.raises(ValueError):
        PathResolver(Settings(storage_path_template="/data/storage/"))
