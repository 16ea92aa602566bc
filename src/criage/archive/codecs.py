# Copyright (c) 2025 adcl.io
# All Rights Reserved.
#
# This software is proprietary and confidential. Unauthorized copying,
# distribution, or use of this software is strictly prohibited.

"""
Archive Codecs

One codec per ArchiveFormat behind a common interface: create, extract and
read the embedded metadata block. Tar-based codecs share the tar handling and
differ only in the compression stream wrapped around it.
"""

import gzip
import logging
import lzma
import os
import queue
import shutil
import tarfile
import time
import zipfile
from abc import ABC, abstractmethod
from contextlib import contextmanager
from pathlib import Path
from typing import BinaryIO, Dict, Iterator, List, Optional

import lz4.frame
import zstandard
from pydantic import ValidationError as PydanticValidationError

from criage.core.errors import MetadataNotFoundError
from criage.models import BuildManifest, PackageManifest, PackageMetadata

from .files import (
    METADATA_ENTRIES,
    METADATA_ENTRY,
    METADATA_JSON_ENTRY,
    ArchiveEntry,
    is_metadata_entry,
    resolve_within,
)
from .formats import ArchiveFormat

logger = logging.getLogger(__name__)

PAX_METADATA = "criage.metadata"
PAX_VERSION = "criage.version"
PAX_PACKAGE_MANIFEST = "criage.package_manifest"
PAX_BUILD_MANIFEST = "criage.build_manifest"

ZIP_COMMENT_LIMIT = 65535

ZSTD_WINDOW_LOG = 20          # 1 MiB
ZSTD_MAX_WINDOW_SIZE = 1 << 26  # 64 MiB


def _clamp(value: int, low: int, high: int) -> int:
    return max(low, min(high, value))


def _parse_metadata(data: str, archive_path: Path) -> PackageMetadata:
    try:
        return PackageMetadata.from_json(data)
    except (PydanticValidationError, ValueError) as e:
        raise MetadataNotFoundError(str(archive_path), details={"reason": f"invalid metadata: {e}"})


class ZstdCodecPool:
    """
    Pool of reusable zstd compressors and decompressors.

    A zstandard context is reset onto each new stream, so an instance must
    belong to one archive operation for the whole operation. Instances are
    checked out for the full create/extract and returned afterwards.
    """

    def __init__(
        self,
        level: int = 3,
        size: int = 4,
        window_log: int = ZSTD_WINDOW_LOG,
        threads: int = 0,
        max_window_size: int = ZSTD_MAX_WINDOW_SIZE
    ):
        self.level = _clamp(level, 1, 22)
        self.size = max(1, size)
        self.window_log = window_log
        self.threads = threads
        self.max_window_size = max_window_size

        self._closed = False
        self._compressors: "queue.Queue[zstandard.ZstdCompressor]" = queue.Queue()
        self._decompressors: "queue.Queue[zstandard.ZstdDecompressor]" = queue.Queue()
        for _ in range(self.size):
            self._compressors.put(self._new_compressor())
            self._decompressors.put(self._new_decompressor())

    def _new_compressor(self) -> zstandard.ZstdCompressor:
        params = zstandard.ZstdCompressionParameters.from_level(
            self.level,
            window_log=self.window_log,
            threads=self.threads,
        )
        return zstandard.ZstdCompressor(compression_params=params)

    def _new_decompressor(self) -> zstandard.ZstdDecompressor:
        return zstandard.ZstdDecompressor(max_window_size=self.max_window_size)

    @contextmanager
    def compressor(self) -> Iterator[zstandard.ZstdCompressor]:
        self._check_open()
        cctx = self._compressors.get()
        try:
            yield cctx
        finally:
            self._compressors.put(cctx)

    @contextmanager
    def decompressor(self) -> Iterator[zstandard.ZstdDecompressor]:
        self._check_open()
        dctx = self._decompressors.get()
        try:
            yield dctx
        finally:
            self._decompressors.put(dctx)

    def _check_open(self) -> None:
        if self._closed:
            raise RuntimeError("zstd codec pool is closed")

    def close(self) -> None:
        """Drop idle instances."""
        self._closed = True
        for pool in (self._compressors, self._decompressors):
            while True:
                try:
                    pool.get_nowait()
                except queue.Empty:
                    break


class ArchiveCodec(ABC):
    """Create/extract one archive format and carry its metadata block"""

    format: ArchiveFormat

    def __init__(self, level: int = 3, tool_version: str = "1.0.0"):
        self.level = level
        self.tool_version = tool_version

    @abstractmethod
    def create(
        self,
        entries: List[ArchiveEntry],
        dest_path: Path,
        metadata: Optional[PackageMetadata] = None
    ) -> None:
        """Write entries (and the metadata block, when given) to dest_path."""

    @abstractmethod
    def extract(self, src_path: Path, dest_dir: Path) -> List[str]:
        """Extract into dest_dir; returns the extracted entry names."""

    @abstractmethod
    def read_metadata(self, src_path: Path) -> PackageMetadata:
        """Return the embedded metadata block or raise MetadataNotFoundError."""


# =============================================================================
# TAR CODECS
# =============================================================================

class TarCodec(ArchiveCodec):
    """Tar container inside a compression stream"""

    @abstractmethod
    def _compressed_writer(self, raw: BinaryIO):
        """Context manager yielding a writable compressed stream over raw."""

    @abstractmethod
    def _compressed_reader(self, raw: BinaryIO):
        """Context manager yielding a readable decompressed stream over raw."""

    def _metadata_member(self, metadata: PackageMetadata) -> tarfile.TarInfo:
        pax_headers: Dict[str, str] = {
            PAX_METADATA: metadata.to_json(),
            PAX_VERSION: self.tool_version,
        }
        if metadata.package_manifest is not None:
            pax_headers[PAX_PACKAGE_MANIFEST] = metadata.package_manifest.model_dump_json(exclude_none=True)
        if metadata.build_manifest is not None:
            pax_headers[PAX_BUILD_MANIFEST] = metadata.build_manifest.model_dump_json(exclude_none=True)

        member = tarfile.TarInfo(METADATA_ENTRY)
        member.type = tarfile.REGTYPE
        member.size = 0
        member.mode = 0o644
        member.mtime = int(time.time())
        member.pax_headers = pax_headers
        return member

    def create(self, entries, dest_path, metadata=None):
        with open(dest_path, "wb") as raw:
            with self._compressed_writer(raw) as stream:
                with tarfile.open(fileobj=stream, mode="w|", format=tarfile.PAX_FORMAT) as tar:
                    # Metadata goes first so readers can stop at the first payload entry
                    if metadata is not None:
                        tar.addfile(self._metadata_member(metadata))
                    for entry in entries:
                        tar.add(str(entry.path), arcname=entry.arcname, recursive=False)

    def extract(self, src_path, dest_dir):
        dest_dir = Path(dest_dir)
        dest_dir.mkdir(parents=True, exist_ok=True)
        root = dest_dir.resolve()
        extracted = []

        with open(src_path, "rb") as raw:
            with self._compressed_reader(raw) as stream:
                with tarfile.open(fileobj=stream, mode="r|") as tar:
                    for member in tar:
                        if is_metadata_entry(member.name):
                            continue

                        target = resolve_within(root, member.name)
                        if member.isdir():
                            target.mkdir(parents=True, exist_ok=True)
                        elif member.isfile():
                            target.parent.mkdir(parents=True, exist_ok=True)
                            source = tar.extractfile(member)
                            with open(target, "wb") as out:
                                shutil.copyfileobj(source, out)
                            os.chmod(target, member.mode & 0o7777)
                        else:
                            logger.debug(f"Skipping non-regular entry {member.name}")
                            continue
                        extracted.append(member.name)

        return extracted

    def read_metadata(self, src_path):
        with open(src_path, "rb") as raw:
            with self._compressed_reader(raw) as stream:
                with tarfile.open(fileobj=stream, mode="r|") as tar:
                    for member in tar:
                        headers = member.pax_headers or {}
                        if PAX_METADATA in headers:
                            return _parse_metadata(headers[PAX_METADATA], src_path)
                        if PAX_PACKAGE_MANIFEST in headers:
                            return self._metadata_from_split_headers(headers, src_path)

                        name = member.name[2:] if member.name.startswith("./") else member.name
                        if name in METADATA_ENTRIES and member.isfile() and member.size > 0:
                            content = tar.extractfile(member).read().decode("utf-8")
                            return _parse_metadata(content, src_path)

                        # Metadata is only ever written before payload entries
                        if name and not name.startswith("."):
                            break

        raise MetadataNotFoundError(str(src_path))

    @staticmethod
    def _metadata_from_split_headers(headers: Dict[str, str], src_path: Path) -> PackageMetadata:
        try:
            build_manifest = None
            if PAX_BUILD_MANIFEST in headers:
                build_manifest = BuildManifest.model_validate_json(headers[PAX_BUILD_MANIFEST])
            return PackageMetadata(
                package_manifest=PackageManifest.model_validate_json(headers[PAX_PACKAGE_MANIFEST]),
                build_manifest=build_manifest,
                created_by=f"criage/{headers.get(PAX_VERSION, '')}".rstrip("/"),
            )
        except (PydanticValidationError, ValueError) as e:
            raise MetadataNotFoundError(str(src_path), details={"reason": f"invalid metadata: {e}"})


class TarZstCodec(TarCodec):
    format = ArchiveFormat.TAR_ZST

    def __init__(self, pool: ZstdCodecPool, level: int = 3, tool_version: str = "1.0.0"):
        super().__init__(level=level, tool_version=tool_version)
        self.pool = pool

    @contextmanager
    def _compressed_writer(self, raw):
        with self.pool.compressor() as cctx:
            with cctx.stream_writer(raw, closefd=False) as writer:
                yield writer

    @contextmanager
    def _compressed_reader(self, raw):
        with self.pool.decompressor() as dctx:
            with dctx.stream_reader(raw, closefd=False) as reader:
                yield reader


class TarLz4Codec(TarCodec):
    format = ArchiveFormat.TAR_LZ4

    @contextmanager
    def _compressed_writer(self, raw):
        with lz4.frame.LZ4FrameFile(raw, mode="wb") as writer:
            yield writer

    @contextmanager
    def _compressed_reader(self, raw):
        with lz4.frame.LZ4FrameFile(raw, mode="rb") as reader:
            yield reader


class TarXzCodec(TarCodec):
    format = ArchiveFormat.TAR_XZ

    @contextmanager
    def _compressed_writer(self, raw):
        with lzma.LZMAFile(raw, mode="wb", preset=_clamp(self.level, 0, 9)) as writer:
            yield writer

    @contextmanager
    def _compressed_reader(self, raw):
        with lzma.LZMAFile(raw, mode="rb") as reader:
            yield reader


class TarGzCodec(TarCodec):
    format = ArchiveFormat.TAR_GZ

    @contextmanager
    def _compressed_writer(self, raw):
        with gzip.GzipFile(fileobj=raw, mode="wb", compresslevel=_clamp(self.level, 1, 9)) as writer:
            yield writer

    @contextmanager
    def _compressed_reader(self, raw):
        with gzip.GzipFile(fileobj=raw, mode="rb") as reader:
            yield reader


# =============================================================================
# ZIP CODEC
# =============================================================================

class ZipCodec(ArchiveCodec):
    """
    Native zip container.

    Metadata is written twice: as the archive comment and as a
    .criage_metadata.json entry, and either one alone is enough to read it.
    """

    format = ArchiveFormat.ZIP

    def create(self, entries, dest_path, metadata=None):
        with zipfile.ZipFile(
            dest_path,
            mode="w",
            compression=zipfile.ZIP_DEFLATED,
            compresslevel=_clamp(self.level, 0, 9)
        ) as zf:
            if metadata is not None:
                metadata_json = metadata.to_json()
                encoded = metadata_json.encode("utf-8")
                if len(encoded) <= ZIP_COMMENT_LIMIT:
                    zf.comment = encoded
                else:
                    logger.warning(
                        f"Metadata for {dest_path} exceeds the zip comment limit; "
                        f"storing it only as {METADATA_JSON_ENTRY}"
                    )
                zf.writestr(METADATA_JSON_ENTRY, metadata_json)

            for entry in entries:
                # ZipFile.write records st_mode in external_attr
                zf.write(str(entry.path), arcname=entry.arcname)

    def extract(self, src_path, dest_dir):
        dest_dir = Path(dest_dir)
        dest_dir.mkdir(parents=True, exist_ok=True)
        root = dest_dir.resolve()
        extracted = []

        with zipfile.ZipFile(src_path) as zf:
            for info in zf.infolist():
                if is_metadata_entry(info.filename):
                    continue

                target = resolve_within(root, info.filename)
                if info.is_dir():
                    target.mkdir(parents=True, exist_ok=True)
                else:
                    target.parent.mkdir(parents=True, exist_ok=True)
                    with zf.open(info) as source, open(target, "wb") as out:
                        shutil.copyfileobj(source, out)
                    mode = (info.external_attr >> 16) & 0o7777
                    if mode:
                        os.chmod(target, mode)
                extracted.append(info.filename)

        return extracted

    def read_metadata(self, src_path):
        with zipfile.ZipFile(src_path) as zf:
            if zf.comment:
                try:
                    return _parse_metadata(zf.comment.decode("utf-8"), src_path)
                except (MetadataNotFoundError, UnicodeDecodeError) as e:
                    logger.debug(f"Ignoring unreadable zip comment in {src_path}: {e}")

            if METADATA_JSON_ENTRY in zf.namelist():
                return _parse_metadata(zf.read(METADATA_JSON_ENTRY).decode("utf-8"), src_path)

        raise MetadataNotFoundError(str(src_path))


def build_codecs(pool: ZstdCodecPool, level: int, tool_version: str) -> Dict[ArchiveFormat, ArchiveCodec]:
    """One codec instance per format."""
    return {
        ArchiveFormat.TAR_ZST: TarZstCodec(pool, level=level, tool_version=tool_version),
        ArchiveFormat.TAR_LZ4: TarLz4Codec(level=level, tool_version=tool_version),
        ArchiveFormat.TAR_XZ: TarXzCodec(level=level, tool_version=tool_version),
        ArchiveFormat.TAR_GZ: TarGzCodec(level=level, tool_version=tool_version),
        ArchiveFormat.ZIP: ZipCodec(level=level, tool_version=tool_version),
    }
