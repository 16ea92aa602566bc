# Copyright (c) 2025 adcl.io
# All Rights Reserved.
#
# This software is proprietary and confidential. Unauthorized copying,
# distribution, or use of this software is strictly prohibited.

"""
Repository API Routes

Handles the package repository HTTP surface under /api/v1:
- Repository info and statistics
- Package listing, lookup and search
- Archive download with download accounting
- Token-protected upload and index refresh

Every JSON response uses the {success, message, data, error} envelope.
"""

import logging
import os
import secrets
import tempfile
from pathlib import Path
from typing import Any, List, Optional, Tuple

import aiofiles
from fastapi import APIRouter, BackgroundTasks, Depends, File, Request, UploadFile
from fastapi.encoders import jsonable_encoder
from fastapi.responses import FileResponse, JSONResponse

from criage import __version__
from criage.core.errors import NotFoundError, UnauthorizedError, ValidationError

from .config import ServerConfig
from .index import IndexManager
from .models import ApiResponse

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1", tags=["repository"])

REPOSITORY_NAME = "Criage Package Repository"
DEFAULT_PAGE_SIZE = 20
MAX_PAGE_SIZE = 100
SIGNATURE_SUFFIX = ".asc"
UPLOAD_CHUNK_SIZE = 1024 * 1024


def envelope(
    data: Any = None,
    message: Optional[str] = None,
    status_code: int = 200
) -> JSONResponse:
    """Successful response in the standard envelope."""
    body = ApiResponse(success=True, message=message, data=jsonable_encoder(data))
    return JSONResponse(status_code=status_code, content=body.model_dump(exclude_none=True))


def error_envelope(status_code: int, error: str) -> JSONResponse:
    """Failed response in the standard envelope."""
    body = ApiResponse(success=False, message=error, error=error)
    return JSONResponse(status_code=status_code, content=body.model_dump(exclude_none=True))


# Dependencies

def get_index_manager(request: Request) -> IndexManager:
    return request.app.state.index_manager


def get_server_config(request: Request) -> ServerConfig:
    return request.app.state.server_config


def require_token(request: Request, config: ServerConfig = Depends(get_server_config)) -> None:
    """Reject requests without the configured bearer token."""
    supplied = request.headers.get("Authorization", "")
    expected = f"Bearer {config.upload_token}"
    if not config.upload_token or not secrets.compare_digest(supplied, expected):
        raise UnauthorizedError()


def _page_size(limit: int) -> int:
    return limit if 1 <= limit <= MAX_PAGE_SIZE else DEFAULT_PAGE_SIZE


def _count_download(index: IndexManager, name: str, version: str) -> None:
    try:
        index.increment_download(name, version)
    except NotFoundError as e:
        logger.error(f"Failed to increment download counter: {e.message}")


# Routes

@router.get("/")
def repository_info(
    index: IndexManager = Depends(get_index_manager),
    config: ServerConfig = Depends(get_server_config)
):
    """Repository identity and summary"""
    snapshot = index.get_index()
    return envelope({
        "name": REPOSITORY_NAME,
        "version": __version__,
        "last_updated": snapshot.last_updated,
        "total_packages": snapshot.total_packages,
        "formats": config.allowed_formats,
    })


@router.get("/stats")
def repository_stats(index: IndexManager = Depends(get_index_manager)):
    return envelope(index.get_statistics())


@router.get("/packages")
def list_packages(
    page: int = 1,
    limit: int = DEFAULT_PAGE_SIZE,
    index: IndexManager = Depends(get_index_manager)
):
    """Paginated package list; out-of-range limits fall back to 20"""
    return envelope(index.list_packages(max(page, 1), _page_size(limit)))


@router.get("/packages/{name}")
def get_package(name: str, index: IndexManager = Depends(get_index_manager)):
    return envelope(index.get_package(name))


@router.get("/packages/{name}/{version}")
def get_package_version(name: str, version: str, index: IndexManager = Depends(get_index_manager)):
    return envelope(index.get_version(name, version))


@router.get("/search")
def search_packages(
    q: Optional[str] = None,
    limit: int = DEFAULT_PAGE_SIZE,
    index: IndexManager = Depends(get_index_manager)
):
    """Ranked search over name, description, keywords and author"""
    if not q:
        raise ValidationError("Search query is required", field="q")

    results = index.search(q)[:_page_size(limit)]
    return envelope({"query": q, "results": results, "total": len(results)})


@router.get("/download/{name}/{version}/{filename}")
def download_package(
    name: str,
    version: str,
    filename: str,
    background_tasks: BackgroundTasks,
    index: IndexManager = Depends(get_index_manager)
):
    """
    Stream an archive, or its detached signature when filename ends in .asc.

    Archive downloads are counted after the response is sent.
    """
    if filename.endswith(SIGNATURE_SUFFIX):
        archive_name = filename[:-len(SIGNATURE_SUFFIX)]
        index.find_file(name, version, archive_name)
        signature_path = index.storage_path / filename
        if not signature_path.is_file():
            raise NotFoundError("Signature", filename)
        return FileResponse(signature_path, media_type="application/pgp-signature", filename=filename)

    file_entry = index.find_file(name, version, filename)
    file_path = index.storage_path / file_entry.filename
    if not file_path.is_file():
        raise NotFoundError("File on disk", filename)

    background_tasks.add_task(_count_download, index, name, version)
    return FileResponse(
        file_path,
        media_type="application/octet-stream",
        filename=filename,
        headers={"X-Checksum": file_entry.checksum},
    )


async def _stage_upload(upload: UploadFile, dest: Path, max_size: int) -> Tuple[Path, int]:
    """
    Stream an upload into a hidden temp file next to dest.

    dest itself is never opened here; the caller moves the staged file into
    place once every part of the upload has been accepted.
    """
    fd, staged_name = tempfile.mkstemp(prefix=f".{dest.name}.", suffix=".upload", dir=dest.parent)
    os.close(fd)
    staged = Path(staged_name)

    size = 0
    async with aiofiles.open(staged, "wb") as out:
        while True:
            chunk = await upload.read(UPLOAD_CHUNK_SIZE)
            if not chunk:
                break
            size += len(chunk)
            if size > max_size:
                break
            await out.write(chunk)

    if size > max_size:
        staged.unlink(missing_ok=True)
        raise ValidationError(f"File exceeds maximum size of {max_size} bytes", field="package")
    return staged, size


@router.post("/upload", status_code=201, dependencies=[Depends(require_token)])
async def upload_package(
    background_tasks: BackgroundTasks,
    package: Optional[UploadFile] = File(None),
    signature: Optional[UploadFile] = File(None),
    index: IndexManager = Depends(get_index_manager),
    config: ServerConfig = Depends(get_server_config)
):
    """Store an uploaded archive (and optional .asc signature), then reindex it"""
    if package is None or not package.filename:
        raise ValidationError("No package file provided", field="package")

    filename = Path(package.filename).name
    if not filename or filename.startswith(".") or not index.is_package_file(filename):
        raise ValidationError("Unsupported file format", field="package")

    index.storage_path.mkdir(parents=True, exist_ok=True)
    dest = index.storage_path / filename
    signature_dest = index.storage_path / (filename + SIGNATURE_SUFFIX)

    staged: List[Path] = []
    try:
        staged_package, size = await _stage_upload(package, dest, config.max_file_size)
        staged.append(staged_package)
        staged_signature = None
        if signature is not None and signature.filename:
            staged_signature, _ = await _stage_upload(signature, signature_dest, config.max_file_size)
            staged.append(staged_signature)

        os.replace(staged_package, dest)
        if staged_signature is not None:
            os.replace(staged_signature, signature_dest)
        else:
            # A signature left over from a previous upload no longer matches
            signature_dest.unlink(missing_ok=True)
    finally:
        for path in staged:
            path.unlink(missing_ok=True)

    logger.info(f"Uploaded package: {filename} ({size} bytes)")
    background_tasks.add_task(index.index_file, filename)

    return envelope(
        {"filename": filename, "size": size},
        message="Package uploaded successfully",
        status_code=201,
    )


@router.post("/refresh", dependencies=[Depends(require_token)])
def refresh_index(index: IndexManager = Depends(get_index_manager)):
    """Rescan storage synchronously"""
    index.scan()
    snapshot = index.get_index()
    return envelope(
        {"total_packages": snapshot.total_packages, "last_updated": snapshot.last_updated},
        message="Index refreshed successfully",
    )
