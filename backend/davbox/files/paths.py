"""Safe path resolution under each user's storage root (no directory traversal)."""

import logging
import re
import unicodedata
from pathlib import Path
from typing import Optional
from urllib.parse import unquote

from davbox.config import Settings
from davbox.errors import InvalidPath

log = logging.getLogger(__name__)

# User id used as folder name: letters, digits and . _ @ -
_SAFE_USER_ID = re.compile(r"^[a-zA-Z0-9_.@-]+$")
# Ids that must never produce a usable storage root
_TRAVERSAL_PROBES = ("", ".", "..", "../x", "x/..", "a/b", "a\\b", "%2e%2e", "x\x00y", "...")
_MAX_SEGMENT_BYTES = 255
# Suffix of in-flight upload files; such names are not addressable by clients
TEMP_SUFFIX = ".davbox-part"


def _sanitize_user_id(user_id: str) -> Optional[str]:
    """Return user id if safe for use as a single path segment (no traversal)."""
    if not user_id or user_id != user_id.strip():
        return None
    if set(user_id) == {"."} or "/" in user_id or "\\" in user_id:
        return None
    if not _SAFE_USER_ID.match(user_id):
        return None
    return user_id


def validate_storage_template(template: str) -> None:
    """Check the storage path template once at startup. Raises ValueError."""
    if template.count("%s") != 1:
        raise ValueError("storage_path_template must contain exactly one %s")
    for probe in _TRAVERSAL_PROBES:
        if _sanitize_user_id(probe) is not None:
            raise ValueError(f"user id sanitizer accepted unsafe id {probe!r}")


def is_valid_user_id(user_id: str) -> bool:
    return _sanitize_user_id(user_id) is not None


def normalize(logical_path: str) -> str:
    """Percent-decode a logical path (exactly once) and canonicalize it."""
    if logical_path is None:
        raise InvalidPath("Path is required")
    try:
        decoded = unquote(logical_path, errors="strict")
    except UnicodeDecodeError:
        raise InvalidPath(f"Path is not valid UTF-8: {logical_path!r}")
    return canonicalize(decoded)


def canonicalize(path: str) -> str:
    """
    Bring an already decoded path to the canonical "/a/b" form.
    "." and empty segments are dropped, ".." pops a segment; popping above "/"
    raises InvalidPath, as do control characters and NUL bytes.
    """
    if any(unicodedata.category(c) == "Cc" for c in path):
        raise InvalidPath(f"Control character in path: {path!r}")
    parts: list[str] = []
    for segment in path.replace("\\", "/").split("/"):
        if segment in ("", "."):
            continue
        if segment == "..":
            if not parts:
                raise InvalidPath(f"Path escapes the storage root: {path!r}")
            parts.pop()
            continue
        if segment.endswith(TEMP_SUFFIX):
            raise InvalidPath(f"Reserved name: {segment!r}")
        if len(segment.encode("utf-8")) > _MAX_SEGMENT_BYTES:
            raise InvalidPath("Path segment too long")
        parts.append(segment)
    return "/" + "/".join(parts)


def parent_of(path: str) -> str:
    """Parent of a canonical path; the root is its own parent."""
    if path == "/":
        return "/"
    head = path.rsplit("/", 1)[0]
    return head or "/"


def is_within(path: str, ancestor: str) -> bool:
    """True if canonical ``path`` equals ``ancestor`` or lies below it."""
    if ancestor == "/":
        return True
    return path == ancestor or path.startswith(ancestor + "/")


class PathResolver:
    """Maps (user, logical path) to an absolute path inside that user's root."""

    def __init__(self, settings: Settings) -> None:
        validate_storage_template(settings.storage_path_template)
        self.template = settings.storage_path_template

    def storage_root_for(self, user_id: str) -> Path:
        """Return the filesystem path for a user's root (template with %s = user id)."""
        safe_id = _sanitize_user_id(user_id)
        if not safe_id:
            raise InvalidPath(f"Invalid user id for path: {user_id!r}")
        return Path(self.template.replace("%s", safe_id))

    def resolve(self, user_id: str, logical_path: str) -> Path:
        """
        Resolve a percent-encoded logical path under the user's root. The
        result, symlinks included, must stay inside that root.
        """
        return self.locate(user_id, normalize(logical_path))

    def locate(self, user_id: str, path: str) -> Path:
        """Like resolve() for a path that is already decoded."""
        root = self.storage_root_for(user_id)
        canonical = canonicalize(path)
        target = root.joinpath(*canonical.strip("/").split("/")) if canonical != "/" else root
        real_root = root.resolve()
        try:
            target.resolve().relative_to(real_root)
        except ValueError:
            log.warning("resolve rejected user=%s path=%r: outside storage root", user_id, path)
            raise InvalidPath(f"Path escapes the storage root: {path!r}")
        return target

    def logical_path_of(self, user_id: str, absolute: Path) -> str:
        """Inverse of resolve() for paths inside the user's root."""
        root = self.storage_root_for(user_id)
        try:
            rel = Path(absolute).relative_to(root)
        except ValueError:
            raise InvalidPath(f"{absolute} is not inside the storage root of {user_id}")
        parts = [p for p in rel.as_posix().split("/") if p and p != "."]
        return "/" + "/".join(parts)
