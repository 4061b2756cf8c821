"""File routes: WebDAV-style methods under /files/{owner}/ plus JSON helpers under /api/files."""

import logging
import mimetypes
from email.utils import format_datetime
from typing import Annotated, List, Optional, Tuple
from urllib.parse import quote, unquote, urlsplit

from fastapi import APIRouter, Depends, Request, Response, status
from fastapi.responses import JSONResponse, StreamingResponse

from davbox.auth.dependencies import get_gate, get_token
from davbox.errors import InvalidPath, NotFound
from davbox.files.models import EntryResponse, StorageEntry
from davbox.gate import AccessGate
from davbox.users.models import QuotaResponse
from davbox.users.routes import quota_response

router = APIRouter(prefix="/files", tags=["files"])
api_router = APIRouter(prefix="/api/files", tags=["files"])
log = logging.getLogger(__name__)

FILES_PREFIX = "files"


def _raw_logical_path(request: Request, path: str) -> str:
    """
    The still percent-encoded remainder after /files/{owner}, so decoding
    happens exactly once (in the path resolver).
    """
    raw = request.scope.get("raw_path")
    if not raw:
        return "/" + quote(path)
    parts = raw.decode("latin-1").split("?", 1)[0].split("/", 3)
    # ["", "files", owner, rest]
    return "/" + (parts[3] if len(parts) > 3 else "")


def parse_destination(destination: str, root_url: str) -> Tuple[str, str]:
    """
    Split a MOVE Destination header (absolute URL or absolute path) into
    (owner, percent-encoded logical path). Raises InvalidPath.
    """
    if not destination:
        raise InvalidPath("Destination header is required")
    dest_path = urlsplit(destination).path
    base = urlsplit(root_url).path.rstrip("/")
    if base and not dest_path.startswith(base + "/"):
        raise InvalidPath("Destination is outside this server")
    parts = dest_path[len(base):].split("/", 3)
    if len(parts) < 3 or parts[1] != FILES_PREFIX or not parts[2]:
        raise InvalidPath(f"Destination is not a file URL: {destination!r}")
    return unquote(parts[2]), "/" + (parts[3] if len(parts) > 3 else "")


def _etag(entry: StorageEntry) -> str:
    return f'"{entry.version}"'


def _parse_if_match(value: Optional[str]) -> Optional[str]:
    """Version tag from an If-Match header (quotes and weak prefix stripped)."""
    if value is None:
        return None
    value = value.strip()
    if value == "*":
        return value
    if value.startswith("W/"):
        value = value[2:]
    return value.strip('"')


def _entry_headers(entry: StorageEntry) -> dict:
    headers = {
        "ETag": _etag(entry),
        "Last-Modified": format_datetime(entry.modified_at, usegmt=True),
    }
    if not entry.is_dir:
        headers["Content-Length"] = str(entry.size)
    return headers


async def _exists(gate: AccessGate, token: str, path: str, owner: str) -> bool:
    try:
        await gate.stat(token, path, owner=owner)
        return True
    except NotFound:
        return False


def _listing(entries: List[StorageEntry]) -> List[dict]:
    return [EntryResponse.model_validate(e).model_dump(mode="json") for e in entries]


@router.api_route("/{owner}", methods=["GET", "HEAD"])
@router.api_route("/{owner}/{path:path}", methods=["GET", "HEAD"])
async def download(
    request: Request,
    owner: str,
    token: Annotated[str, Depends(get_token)],
    gate: Annotated[AccessGate, Depends(get_gate)],
    path: str = "",
) -> Response:
    """Download a file, or list a directory as JSON."""
    logical = _raw_logical_path(request, path)
    entry = await gate.stat(token, logical, owner=owner)
    headers = _entry_headers(entry)
    if entry.is_dir:
        if request.method == "HEAD":
            return Response(headers=headers, media_type="application/json")
        entries = await gate.list(token, logical, owner=owner)
        return JSONResponse(content=_listing(entries), headers=headers)
    media_type = mimetypes.guess_type(entry.name)[0] or "application/octet-stream"
    if request.method == "HEAD":
        return Response(status_code=status.HTTP_200_OK, headers=headers, media_type=media_type)
    _, content = await gate.open(token, logical, owner=owner)
    log.info("download user=%s path=%s", owner, entry.path)
    return StreamingResponse(content, media_type=media_type, headers=headers)


@router.put("/{owner}/{path:path}")
async def upload(
    request: Request,
    owner: str,
    path: str,
    token: Annotated[str, Depends(get_token)],
    gate: Annotated[AccessGate, Depends(get_gate)],
) -> Response:
    """Create or replace a file. Honors If-Match and If-None-Match: *."""
    logical = _raw_logical_path(request, path)
    if_match = _parse_if_match(request.headers.get("if-match"))
    if_none_match = (request.headers.get("if-none-match") or "").strip() == "*"
    existed = await _exists(gate, token, logical, owner)
    length_header = request.headers.get("content-length")
    if length_header is not None and length_header.isdigit():
        content = request.stream()
        length: Optional[int] = int(length_header)
    else:
        content = await request.body()
        length = None
    entry = await gate.write(
        token,
        logical,
        content,
        length=length,
        owner=owner,
        if_match=if_match,
        if_none_match=if_none_match,
    )
    return Response(
        status_code=status.HTTP_204_NO_CONTENT if existed else status.HTTP_201_CREATED,
        headers={"ETag": _etag(entry)},
    )


@router.delete("/{owner}/{path:path}", status_code=status.HTTP_204_NO_CONTENT)
async def delete(
    request: Request,
    owner: str,
    path: str,
    token: Annotated[str, Depends(get_token)],
    gate: Annotated[AccessGate, Depends(get_gate)],
) -> Response:
    """Delete a file or a directory tree."""
    logical = _raw_logical_path(request, path)
    await gate.delete(
        token, logical, owner=owner, if_match=_parse_if_match(request.headers.get("if-match"))
    )
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.api_route("/{owner}/{path:path}", methods=["MKCOL"])
async def mkcol(
    request: Request,
    owner: str,
    path: str,
    token: Annotated[str, Depends(get_token)],
    gate: Annotated[AccessGate, Depends(get_gate)],
) -> Response:
    """Create a collection."""
    logical = _raw_logical_path(request, path)
    entry = await gate.mkdir(token, logical, owner=owner)
    return Response(status_code=status.HTTP_201_CREATED, headers={"ETag": _etag(entry)})


@router.api_route("/{owner}/{path:path}", methods=["MOVE"])
async def move(
    request: Request,
    owner: str,
    path: str,
    token: Annotated[str, Depends(get_token)],
    gate: Annotated[AccessGate, Depends(get_gate)],
) -> Response:
    """Rename within the owner's tree. Destination and Overwrite headers as in WebDAV."""
    logical = _raw_logical_path(request, path)
    dest_owner, dest = parse_destination(
        request.headers.get("destination", ""), request.app.state.settings.root_url
    )
    overwrite = (request.headers.get("overwrite") or "T").strip().upper() != "F"
    existed = dest_owner == owner and await _exists(gate, token, dest, owner)
    entry = await gate.move(
        token,
        logical,
        dest,
        owner=owner,
        dest_owner=dest_owner,
        overwrite=overwrite,
        if_match=_parse_if_match(request.headers.get("if-match")),
    )
    return Response(
        status_code=status.HTTP_204_NO_CONTENT if existed else status.HTTP_201_CREATED,
        headers={"ETag": _etag(entry)},
    )


@api_router.get("/list", response_model=List[EntryResponse])
async def list_files(
    token: Annotated[str, Depends(get_token)],
    gate: Annotated[AccessGate, Depends(get_gate)],
    path: str = "/",
) -> List[EntryResponse]:
    """List direct children of a directory of the current user."""
    entries = await gate.list(token, quote(path))
    return [EntryResponse.model_validate(e) for e in entries]


@api_router.get("/quota", response_model=QuotaResponse)
async def get_quota(
    token: Annotated[str, Depends(get_token)],
    gate: Annotated[AccessGate, Depends(get_gate)],
) -> QuotaResponse:
    """Return current user's storage used and limit in bytes."""
    return quota_response(await gate.quota(token))
