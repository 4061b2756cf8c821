"""Error taxonomy shared by the storage core and the HTTP layer.

Every failure carries a stable ``kind`` so the protocol layer can map it to a
status code without inspecting messages.
"""

from typing import Any, Dict


class DavboxError(Exception):
    """Base class for all storage-core failures."""

    kind = "Error"

    def __init__(self, message: str = "") -> None:
        super().__init__(message or self.kind)
        self.message = message or self.kind

    def to_dict(self) -> Dict[str, Any]:
        """Error as returned in API response bodies."""
        return {"error": self.kind, "detail": self.message}


class Unauthorized(DavboxError):
    """Missing, invalid, revoked or expired session."""

    kind = "Unauthorized"


class InvalidPath(DavboxError):
    """Traversal attempt or malformed path."""

    kind = "InvalidPath"


class QuotaExceeded(DavboxError):
    """The operation would take the user over their quota."""

    kind = "QuotaExceeded"


class NotFound(DavboxError):
    kind = "NotFound"


class Forbidden(DavboxError):
    """Cross-owner operation or an operation on a protected resource."""

    kind = "Forbidden"


class StorageIOFailure(DavboxError):
    """Underlying disk error. Never retried by the core."""

    kind = "StorageIOFailure"


class Conflict(DavboxError):
    """Version-tag mismatch or a path in a state that does not allow the operation."""

    kind = "Conflict"


class SessionError(DavboxError):
    """Failures local to the session manager; surfaced to callers as Unauthorized."""

    kind = "Unauthorized"


class InvalidCredentials(SessionError):
    pass


class NoSuchSession(SessionError):
    pass


class SessionExpired(SessionError):
    pass


class PreconditionFailed(Conflict):
    """If-Match / If-None-Match did not hold. Same kind as Conflict."""
