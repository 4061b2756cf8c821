"""Fire-and-forget notifications for an external thumbnail generator."""

import asyncio
import logging
from typing import Awaitable, Callable, Optional, Set

log = logging.getLogger(__name__)

WRITTEN = "written"
REMOVED = "removed"

# Extensions the thumbnail generator understands
IMAGE_EXTENSIONS = {".jpg", ".jpeg", ".png", ".gif", ".webp", ".bmp", ".tif", ".tiff", ".heic"}

# hook(event, user_id, logical_path)
ThumbnailHook = Callable[[str, str, str], Awaitable[None]]


async def _log_only(event: str, user_id: str, path: str) -> None:
    log.debug("thumbnail %s user=%s path=%s (no generator configured)", event, user_id, path)


def wants_thumbnail(path: str) -> bool:
    name = path.rsplit("/", 1)[-1]
    dot = name.rfind(".")
    return dot > 0 and name[dot:].lower() in IMAGE_EXTENSIONS


class ThumbnailNotifier:
    """Schedules hook calls as background tasks; callers never wait for them."""

    def __init__(self, hook: Optional[ThumbnailHook] = None, enabled: bool = True) -> None:
        self._hook = hook or _log_only
        self.enabled = enabled
        self._tasks: Set[asyncio.Task] = set()

    def notify(self, event: str, user_id: str, path: str) -> Optional[asyncio.Task]:
        """Schedule a notification for an image path. Returns the task, or None if skipped."""
        if not self.enabled or not wants_thumbnail(path):
            return None
        task = asyncio.create_task(self._run(event, user_id, path))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _run(self, event: str, user_id: str, path: str) -> None:
        try:
            await self._hook(event, user_id, path)
        except Exception:
            log.exception("Thumbnail hook failed: %s user=%s path=%s", event, user_id, path)

    async def drain(self) -> None:
        """Wait for in-flight notifications (shutdown and tests)."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
