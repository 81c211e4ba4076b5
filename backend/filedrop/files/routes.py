"""File routes: upload page, upload, view."""

import logging
from functools import lru_cache
from pathlib import Path
from typing import Annotated

from fastapi import APIRouter, BackgroundTasks, Depends, Request
from fastapi.responses import HTMLResponse, StreamingResponse
from starlette.concurrency import run_in_threadpool
from starlette.datastructures import UploadFile
from starlette.formparsers import MultiPartException

from filedrop.auth.dependencies import require_uploader
from filedrop.errors import DropError, ErrorKind, NameInUseError
from filedrop.files.hash_store import HashIndex, InsertResult, compute_hash
from filedrop.files.models import UploadResponse
from filedrop.files.storage import (
    iter_file,
    resolve_stored_file,
    sniff_content_type,
    unused_filename,
    write_new_file,
)
from filedrop.limiter import UPLOAD_RATE_LIMIT, limiter

router = APIRouter(tags=["files"])
log = logging.getLogger(__name__)

_INDEX_PAGE = Path(__file__).resolve().parent.parent / "web" / "index.html"


def get_hash_index(request: Request) -> HashIndex:
    return request.app.state.hash_index


def get_uploads_folder(request: Request) -> Path:
    return request.app.state.uploads_folder


@lru_cache(maxsize=1)
def _index_page() -> str:
    return _INDEX_PAGE.read_text(encoding="utf-8")


def _check_content_length(request: Request) -> None:
    """Reject bodies without a declared length or larger than the configured cap."""
    raw = request.headers.get("content-length")
    if raw is None:
        raise DropError(ErrorKind.LENGTH_REQUIRED, "Content-Length header is required")
    try:
        length = int(raw)
    except ValueError:
        raise DropError.bad_request("invalid Content-Length") from None
    if length < 0:
        raise DropError.bad_request("invalid Content-Length")
    limit = request.app.state.max_upload_bytes
    if length > limit:
        raise DropError(ErrorKind.PAYLOAD_TOO_LARGE, f"Request body exceeds {limit} bytes")


async def _read_first_field(request: Request) -> bytes:
    """
    Return the bytes of the first multipart field (file or plain value).
    Plain fields may be as large as the upload cap.
    """
    max_part_size = request.app.state.max_upload_bytes
    try:
        async with request.form(max_part_size=max_part_size) as form:
            items = form.multi_items()
            if not items:
                raise DropError.bad_request("Missing form field")
            _, value = items[0]
            if isinstance(value, UploadFile):
                return await value.read()
            return value.encode("utf-8")
    except MultiPartException as e:
        raise DropError.bad_request(e.message) from e


def _claim_name(hash_index: HashIndex, folder: Path, content_hash: str) -> InsertResult:
    """Insert content_hash under a fresh name, or return the name it already has."""
    while True:
        candidate = unused_filename(folder, hash_index)
        try:
            return hash_index.insert_if_absent(content_hash, candidate)
        except NameInUseError:
            log.debug("Name %s claimed concurrently, regenerating", candidate)


def _public_url(request: Request, file_name: str) -> str:
    base = request.app.state.public_url
    if base:
        return f"{base.rstrip('/')}/{file_name}"
    host = request.headers.get("host") or request.url.netloc
    return f"{request.url.scheme}://{host}/{file_name}"


def persist_entry(hash_index: HashIndex, content_hash: str, file_name: str) -> None:
    """Background task: make the index entry durable. Failures are logged only."""
    try:
        hash_index.persist(content_hash, file_name)
    except (OSError, ValueError):
        log.exception("Failed to persist hash entry for %s", file_name)


@router.get("/", response_class=HTMLResponse)
async def index() -> HTMLResponse:
    """Upload page."""
    return HTMLResponse(_index_page())


@router.post("/", response_model=UploadResponse, dependencies=[Depends(require_uploader)])
@limiter.limit(UPLOAD_RATE_LIMIT)
async def upload(
    request: Request,
    background_tasks: BackgroundTasks,
    hash_index: Annotated[HashIndex, Depends(get_hash_index)],
    folder: Annotated[Path, Depends(get_uploads_folder)],
) -> UploadResponse:
    """
    Upload a file as the first field of a multipart form.
    Identical content is stored once; every upload of it gets the same name.
    """
    _check_content_length(request)
    body = await _read_first_field(request)
    content_hash = await run_in_threadpool(compute_hash, body)
    result = await run_in_threadpool(_claim_name, hash_index, folder, content_hash)
    if result.inserted:
        target = folder / result.name
        try:
            await run_in_threadpool(write_new_file, target, body)
        except OSError as e:
            hash_index.forget(content_hash, result.name)
            log.error("upload write failed name=%s: %s", result.name, e)
            raise DropError.io_failure() from e
        background_tasks.add_task(persist_entry, hash_index, content_hash, result.name)
        log.info("upload stored name=%s size=%d", result.name, len(body))
    else:
        log.info("upload reused name=%s size=%d", result.name, len(body))
    return UploadResponse(full_url=_public_url(request, result.name), file_name=result.name)


@router.get("/{file_name}")
async def view(
    file_name: str,
    folder: Annotated[Path, Depends(get_uploads_folder)],
) -> StreamingResponse:
    """Serve a stored file by name; any extension is ignored. Content-Type is sniffed."""
    try:
        path = resolve_stored_file(folder, file_name)
        media_type = await run_in_threadpool(sniff_content_type, path)
        size = path.stat().st_size
    except FileNotFoundError:
        raise DropError.not_found()
    except OSError as e:
        log.error("view failed name=%s: %s", file_name, e)
        raise DropError.io_failure() from e
    return StreamingResponse(
        iter_file(path),
        media_type=media_type,
        headers={"Content-Length": str(size)},
    )
