# Copyright (c) 2025 adcl.io
# All Rights Reserved.
#
# This software is proprietary and confidential. Unauthorized copying,
# distribution, or use of this software is strictly prohibited.

"""
Repository Index Manager

Single responsibility: own the repository catalog.

- Scans the storage directory for archives not yet indexed
- Reads embedded metadata, falling back to the archive's filename
- Ranks search results
- Counts downloads

Every read-modify-persist cycle runs under one lock; readers get copies.
The index file is rewritten whole on every mutation.
"""

import logging
import lzma
import os
import shutil
import tarfile
import threading
import zipfile
import zlib
from pathlib import Path
from typing import Dict, List, Optional, Tuple

import zstandard
from pydantic import ValidationError as PydanticValidationError

from criage.archive import ArchiveManager, strip_format_suffix
from criage.core.config import SUPPORTED_FORMATS
from criage.core.errors import (
    MetadataNotFoundError,
    NotFoundError,
    UnsupportedFormatError,
    ValidationError,
)
from criage.models import PackageManifest, SearchResult
from criage.registry.client import sha256_file

from .models import FileEntry, PackageEntry, RepositoryIndex, Statistics, VersionEntry, utcnow

logger = logging.getLogger(__name__)

DEFAULT_OS = "linux"
DEFAULT_ARCH = "amd64"
POPULAR_LIMIT = 10

# Search weights
NAME_WEIGHT = 10.0
DESCRIPTION_WEIGHT = 5.0
KEYWORD_WEIGHT = 3.0
AUTHOR_WEIGHT = 2.0

# What a foreign or corrupt archive can raise while its metadata is read.
# lz4.frame reports a damaged frame as RuntimeError.
UNREADABLE_ARCHIVE_ERRORS = (
    MetadataNotFoundError,
    UnsupportedFormatError,
    ValidationError,
    OSError,
    EOFError,
    UnicodeDecodeError,
    tarfile.TarError,
    zipfile.BadZipFile,
    lzma.LZMAError,
    zlib.error,
    zstandard.ZstdError,
    RuntimeError,
)


class IndexManager:
    """
    Repository catalog backed by a single JSON file.

    Usage:
        manager = IndexManager(storage_path, index_path)
        manager.load()
        manager.scan()
    """

    def __init__(
        self,
        storage_path: Path,
        index_path: Path,
        allowed_formats: Optional[List[str]] = None,
        archive_manager: Optional[ArchiveManager] = None
    ):
        """
        Initialize index manager.

        Args:
            storage_path: Directory holding the archive files
            index_path: JSON file the index is persisted to
            allowed_formats: Archive formats accepted as packages
            archive_manager: Codecs used to read embedded metadata
        """
        self.storage_path = Path(storage_path)
        self.index_path = Path(index_path)
        self.allowed_formats = list(allowed_formats or SUPPORTED_FORMATS)
        self._owns_archive_manager = archive_manager is None
        self.archive_manager = archive_manager or ArchiveManager(parallel=2)
        self._index = RepositoryIndex()
        self._lock = threading.Lock()

    def close(self) -> None:
        if self._owns_archive_manager:
            self.archive_manager.close()

    # =========================================================================
    # PERSISTENCE
    # =========================================================================

    def load(self) -> RepositoryIndex:
        """
        Load the persisted index, or start an empty one.

        An unreadable index file is moved aside to <index>.corrupt and the
        catalog is rebuilt from storage by the next scan.
        """
        with self._lock:
            if self.index_path.exists():
                try:
                    self._index = RepositoryIndex.model_validate_json(self.index_path.read_text())
                    logger.info(f"Loaded index with {len(self._index.packages)} packages")
                except (OSError, PydanticValidationError) as e:
                    backup = self.index_path.with_name(self.index_path.name + ".corrupt")
                    logger.error(f"Unreadable index {self.index_path}, moved to {backup}: {e}")
                    shutil.move(str(self.index_path), str(backup))
                    self._index = RepositoryIndex()
            else:
                logger.info(f"Creating new index at {self.index_path}")
                self._index = RepositoryIndex()
            return self._index.model_copy(deep=True)

    def _save(self) -> None:
        """Recompute aggregates and rewrite the index file. Caller holds the lock."""
        index = self._index
        index.last_updated = utcnow()
        index.total_packages = len(index.packages)
        index.statistics = self._compute_statistics(index)

        self.index_path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.index_path.with_name(self.index_path.name + ".tmp")
        tmp_path.write_text(index.model_dump_json(indent=2))
        os.replace(tmp_path, self.index_path)

    @staticmethod
    def _compute_statistics(index: RepositoryIndex) -> Statistics:
        stats = Statistics()
        for package in index.packages.values():
            if package.license:
                stats.packages_by_license[package.license] = stats.packages_by_license.get(package.license, 0) + 1
            if package.author:
                stats.packages_by_author[package.author] = stats.packages_by_author.get(package.author, 0) + 1
            stats.total_downloads += package.downloads

        # sorted() is stable, so equal counts keep index order
        popular = sorted(index.packages.values(), key=lambda p: p.downloads, reverse=True)
        stats.popular_packages = [p.name for p in popular[:POPULAR_LIMIT]]
        return stats

    # =========================================================================
    # SCANNING
    # =========================================================================

    def is_package_file(self, filename: str) -> bool:
        lowered = filename.lower()
        return any(lowered.endswith("." + fmt) for fmt in self.allowed_formats)

    def scan(self) -> int:
        """
        Index every archive in storage that is not indexed yet.

        A file counts as indexed when some FileEntry has the same filename
        and size. A file that cannot be indexed is logged and skipped.

        Returns:
            Number of archives added
        """
        if not self.storage_path.is_dir():
            logger.warning(f"Storage directory missing: {self.storage_path}")
            return 0

        added = 0
        with self._lock:
            for path in sorted(self.storage_path.iterdir()):
                if not path.is_file() or not self.is_package_file(path.name):
                    continue
                if self._is_indexed(path.name, path.stat().st_size):
                    continue

                logger.info(f"Found new package: {path.name}")
                try:
                    self._add_from_file(path)
                    added += 1
                except (ValidationError, UnsupportedFormatError, OSError) as e:
                    logger.error(f"Failed to index {path.name}: {e}")

            if added:
                self._save()
        return added

    def index_file(self, filename: str) -> bool:
        """
        (Re)index one archive in storage, replacing whatever the index held
        for that filename so its size and checksum match the bytes on disk.

        Returns:
            True if the archive is indexed afterwards
        """
        path = self.storage_path / filename
        with self._lock:
            removed = self._remove_filename(filename)
            indexed = False
            if path.is_file() and self.is_package_file(filename):
                try:
                    self._add_from_file(path)
                    indexed = True
                except (ValidationError, UnsupportedFormatError, OSError) as e:
                    logger.error(f"Failed to index {filename}: {e}")

            if removed or indexed:
                self._save()
        if removed and indexed:
            logger.info(f"Reindexed replaced package: {filename}")
        return indexed

    def _remove_filename(self, filename: str) -> bool:
        """Drop every FileEntry for filename, pruning emptied versions and packages."""
        removed = False
        for name in list(self._index.packages):
            package = self._index.packages[name]
            for version in package.versions:
                kept = [f for f in version.files if f.filename != filename]
                if len(kept) != len(version.files):
                    version.files = kept
                    removed = True

            versions = [v for v in package.versions if v.files]
            if len(versions) == len(package.versions):
                continue
            if versions:
                package.versions = versions
                package.latest_version = self.latest_version(versions)
            else:
                del self._index.packages[name]
        return removed

    def _is_indexed(self, filename: str, size: int) -> bool:
        for package in self._index.packages.values():
            for version in package.versions:
                for file_entry in version.files:
                    if file_entry.filename == filename and file_entry.size == size:
                        return True
        return False

    def _add_from_file(self, path: Path) -> None:
        checksum = sha256_file(path)
        size = path.stat().st_size
        os_name, arch, fmt = self.parse_filename(path.name)

        try:
            metadata = self.archive_manager.extract_metadata(path)
            manifest = metadata.package_manifest
            if manifest is None:
                raise ValidationError(f"Metadata of {path.name} has no package manifest")
        except UNREADABLE_ARCHIVE_ERRORS as e:
            # Foreign or legacy archives are indexed from their filename
            logger.warning(f"Could not read metadata from {path.name}: {e}")
            name, version = self.parse_package_name(path.name)
            manifest = PackageManifest(name=name, version=version)

        self._add_to_index(manifest, path.name, checksum, size, os_name, arch, fmt)

    def parse_filename(self, filename: str) -> Tuple[str, str, str]:
        """
        Derive (os, arch, format) from name-version-os-arch.<format>.

        Names with fewer than four dash-separated parts default to linux/amd64.

        Raises:
            UnsupportedFormatError: Suffix is not an allowed format
        """
        stem, fmt = strip_format_suffix(filename)
        if fmt.value not in self.allowed_formats:
            raise UnsupportedFormatError(fmt.value)

        parts = stem.split("-")
        if len(parts) >= 4:
            return parts[-2], parts[-1], fmt.value
        return DEFAULT_OS, DEFAULT_ARCH, fmt.value

    @staticmethod
    def parse_package_name(filename: str) -> Tuple[str, str]:
        """
        Derive (name, version) from an archive filename.

        Raises:
            ValidationError: Filename carries no version
        """
        stem, _ = strip_format_suffix(filename)
        parts = stem.split("-")
        if len(parts) >= 4:
            name, version = "-".join(parts[:-3]), parts[-3]
        elif len(parts) >= 2:
            name, version = "-".join(parts[:-1]), parts[-1]
        else:
            raise ValidationError(f"Invalid filename format: {filename}", field="filename")

        if not name or not version:
            raise ValidationError(f"Invalid filename format: {filename}", field="filename")
        return name, version

    def _add_to_index(
        self,
        manifest: PackageManifest,
        filename: str,
        checksum: str,
        size: int,
        os_name: str,
        arch: str,
        fmt: str
    ) -> None:
        package = self._index.packages.get(manifest.name)
        if package is None:
            package = PackageEntry(
                name=manifest.name,
                description=manifest.description,
                author=manifest.author,
                license=manifest.license,
                homepage=manifest.homepage,
                repository=manifest.repository,
                keywords=list(manifest.keywords),
            )
            self._index.packages[manifest.name] = package

        version = package.find_version(manifest.version)
        if version is None:
            version = VersionEntry(
                version=manifest.version,
                description=manifest.description,
                dependencies=dict(manifest.dependencies),
                dev_dependencies=dict(manifest.dev_dependencies),
                size=size,
                checksum=checksum,
            )
            package.versions.append(version)

        file_entry = FileEntry(
            os=os_name, arch=arch, format=fmt, filename=filename, size=size, checksum=checksum
        )
        # One file per (os, arch, format); a re-upload replaces the old entry
        version.files = [
            f for f in version.files
            if (f.os, f.arch, f.format) != (os_name, arch, fmt)
        ]
        version.files.append(file_entry)

        package.latest_version = self.latest_version(package.versions)
        package.updated = utcnow()

    @staticmethod
    def latest_version(versions: List[VersionEntry]) -> str:
        """Most recently uploaded version; later entries win ties."""
        if not versions:
            return ""
        _, latest = max(enumerate(versions), key=lambda item: (item[1].uploaded, item[0]))
        return latest.version

    # =========================================================================
    # QUERIES
    # =========================================================================

    def get_index(self) -> RepositoryIndex:
        with self._lock:
            return self._index.model_copy(deep=True)

    def get_statistics(self) -> Statistics:
        with self._lock:
            return self._index.statistics.model_copy(deep=True)

    def get_package(self, name: str) -> PackageEntry:
        """
        Raises:
            NotFoundError: Unknown package
        """
        with self._lock:
            package = self._index.packages.get(name)
            if package is None:
                raise NotFoundError("Package", name)
            return package.model_copy(deep=True)

    def get_version(self, name: str, version: str) -> VersionEntry:
        """
        Raises:
            NotFoundError: Unknown package or version
        """
        package = self.get_package(name)
        entry = package.find_version(version)
        if entry is None:
            raise NotFoundError("Version", f"{name}@{version}")
        return entry

    def find_file(self, name: str, version: str, filename: str) -> FileEntry:
        """
        Raises:
            NotFoundError: Unknown package, version or file
        """
        entry = self.get_version(name, version)
        for file_entry in entry.files:
            if file_entry.filename == filename:
                return file_entry
        raise NotFoundError("File", filename)

    def list_packages(self, page: int = 1, limit: int = 20) -> Dict[str, object]:
        with self._lock:
            packages = [p.model_copy(deep=True) for p in self._index.packages.values()]

        total = len(packages)
        start = min((page - 1) * limit, total)
        end = min(start + limit, total)
        return {
            "packages": packages[start:end],
            "total": total,
            "page": page,
            "limit": limit,
            "total_pages": (total + limit - 1) // limit,
        }

    def search(self, query: str) -> List[SearchResult]:
        """
        Rank packages by case-insensitive substring matches.

        Weights: name 10, description 5, each keyword 3, author 2. Packages
        scoring zero are left out; equal scores keep index order.
        """
        needle = query.lower()
        results = []
        with self._lock:
            for package in self._index.packages.values():
                score = 0.0
                if needle in package.name.lower():
                    score += NAME_WEIGHT
                if needle in package.description.lower():
                    score += DESCRIPTION_WEIGHT
                for keyword in package.keywords:
                    if needle in keyword.lower():
                        score += KEYWORD_WEIGHT
                if needle in package.author.lower():
                    score += AUTHOR_WEIGHT

                if score > 0:
                    results.append(SearchResult(
                        name=package.name,
                        version=package.latest_version,
                        description=package.description,
                        author=package.author,
                        downloads=package.downloads,
                        updated=package.updated,
                        score=score,
                    ))

        results.sort(key=lambda r: r.score, reverse=True)
        return results

    # =========================================================================
    # DOWNLOAD ACCOUNTING
    # =========================================================================

    def increment_download(self, name: str, version: str) -> None:
        """
        Count one download of a package version and persist the index.

        Raises:
            NotFoundError: Unknown package
        """
        with self._lock:
            package = self._index.packages.get(name)
            if package is None:
                raise NotFoundError("Package", name)

            package.downloads += 1
            entry = package.find_version(version)
            if entry is not None:
                entry.downloads += 1
            self._save()
