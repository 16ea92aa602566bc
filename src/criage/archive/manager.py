# Copyright (c) 2025 adcl.io
# All Rights Reserved.
#
# This software is proprietary and confidential. Unauthorized copying,
# distribution, or use of this software is strictly prohibited.

"""
Archive Manager

Single entry point for creating and extracting package archives and for
reading the metadata block embedded in them.
"""

import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Optional, Union

from criage import __version__
from criage.models import PackageMetadata

from .codecs import ArchiveCodec, ZstdCodecPool, ZSTD_WINDOW_LOG, build_codecs
from .files import collect_entries
from .formats import ArchiveFormat, detect_format

logger = logging.getLogger(__name__)

FormatLike = Union[str, ArchiveFormat]


class ArchiveManager:
    """
    Creates/extracts archives in every supported format.

    Holds the zstd codec pool for its lifetime; call close() (or use it as a
    context manager) to release it.
    """

    def __init__(
        self,
        compression_level: int = 3,
        parallel: int = 4,
        tool_version: str = __version__,
        zstd_window_log: int = ZSTD_WINDOW_LOG,
        zstd_threads: int = 0
    ):
        """
        Initialize archive manager.

        Args:
            compression_level: Level for codecs that take one (zstd, xz, gzip, zip)
            parallel: Number of pooled zstd encoder/decoder pairs
            tool_version: Version recorded in created_by and criage.version
            zstd_window_log: zstd window size as a power of two (20 = 1 MiB)
            zstd_threads: zstd worker threads per compression (0 = single threaded)
        """
        self.compression_level = compression_level
        self.tool_version = tool_version
        self.zstd_pool = ZstdCodecPool(
            level=compression_level,
            size=parallel,
            window_log=zstd_window_log,
            threads=zstd_threads,
        )
        self._codecs = build_codecs(self.zstd_pool, compression_level, tool_version)

    def __enter__(self) -> "ArchiveManager":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def close(self) -> None:
        self.zstd_pool.close()

    def codec(self, archive_format: FormatLike) -> ArchiveCodec:
        """
        Get the codec for a format.

        Raises:
            UnsupportedFormatError: If the format is unknown
        """
        return self._codecs[ArchiveFormat.parse(archive_format)]

    @staticmethod
    def detect_format(filename: Union[str, Path]) -> ArchiveFormat:
        return detect_format(str(filename))

    def create_archive(
        self,
        source_dir: Union[str, Path],
        dest_path: Union[str, Path],
        archive_format: FormatLike,
        include: Optional[List[str]] = None,
        exclude: Optional[List[str]] = None
    ) -> Path:
        """
        Archive the selected files of source_dir into dest_path.

        Args:
            source_dir: Directory to archive
            dest_path: Archive to write
            archive_format: One of the ArchiveFormat values
            include: Paths/globs relative to source_dir (empty = whole tree)
            exclude: Globs to skip; excluded directories prune their subtree

        Returns:
            Path to the created archive

        Raises:
            UnsupportedFormatError: Unknown format
            OSError: Filesystem failures
        """
        return self._create(source_dir, dest_path, archive_format, include, exclude, None)

    def create_archive_with_metadata(
        self,
        source_dir: Union[str, Path],
        dest_path: Union[str, Path],
        archive_format: FormatLike,
        include: Optional[List[str]],
        exclude: Optional[List[str]],
        metadata: PackageMetadata
    ) -> Path:
        """
        Archive source_dir and embed metadata ahead of the payload.

        Stamps compression_type, created_at and created_by on metadata
        before writing it.
        """
        codec_format = ArchiveFormat.parse(archive_format)
        metadata.compression_type = codec_format.value
        metadata.created_at = datetime.now(timezone.utc).replace(microsecond=0).isoformat()
        metadata.created_by = f"criage/{self.tool_version}"
        return self._create(source_dir, dest_path, codec_format, include, exclude, metadata)

    def _create(self, source_dir, dest_path, archive_format, include, exclude, metadata) -> Path:
        codec = self.codec(archive_format)
        dest_path = Path(dest_path)
        dest_path.parent.mkdir(parents=True, exist_ok=True)

        entries = collect_entries(
            Path(source_dir),
            include=include,
            exclude=exclude,
            skip=[dest_path.absolute()],
        )
        logger.debug(f"Writing {len(entries)} entries to {dest_path} ({codec.format.value})")

        try:
            codec.create(entries, dest_path, metadata)
        except BaseException:
            dest_path.unlink(missing_ok=True)
            raise
        return dest_path

    def extract_archive(
        self,
        src_path: Union[str, Path],
        dest_dir: Union[str, Path],
        archive_format: Optional[FormatLike] = None
    ) -> List[str]:
        """
        Extract an archive into dest_dir.

        Every entry is checked to resolve inside dest_dir; the first entry
        that does not aborts the extraction with PathTraversalError. Files
        written before that point are left for the caller to clean up.

        Returns:
            Names of the extracted entries
        """
        fmt = archive_format if archive_format is not None else self.detect_format(src_path)
        return self.codec(fmt).extract(Path(src_path), Path(dest_dir))

    def extract_metadata(
        self,
        src_path: Union[str, Path],
        archive_format: Optional[FormatLike] = None
    ) -> PackageMetadata:
        """
        Read the embedded metadata block.

        Raises:
            MetadataNotFoundError: The archive carries no metadata
        """
        fmt = archive_format if archive_format is not None else self.detect_format(src_path)
        return self.codec(fmt).read_metadata(Path(src_path))
