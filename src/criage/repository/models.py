# Copyright (c) 2025 adcl.io
# All Rights Reserved.
#
# This software is proprietary and confidential. Unauthorized copying,
# distribution, or use of this software is strictly prohibited.

"""
Repository Index Models

The index is one JSON document: packages -> versions -> per-platform files,
plus aggregate statistics.
"""

from typing import Any, Dict, List, Optional
from datetime import datetime, timezone
from pydantic import BaseModel, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class FileEntry(BaseModel):
    """One platform/format-specific archive of a package version"""
    os: str
    arch: str
    format: str
    filename: str
    size: int
    checksum: str


class VersionEntry(BaseModel):
    version: str
    description: str = ""
    dependencies: Dict[str, str] = Field(default_factory=dict)
    dev_dependencies: Dict[str, str] = Field(default_factory=dict)
    files: List[FileEntry] = Field(default_factory=list)
    size: int = 0
    checksum: str = ""
    uploaded: datetime = Field(default_factory=utcnow)
    downloads: int = 0


class PackageEntry(BaseModel):
    name: str
    description: str = ""
    author: str = ""
    license: str = ""
    homepage: Optional[str] = None
    repository: Optional[str] = None
    keywords: List[str] = Field(default_factory=list)
    versions: List[VersionEntry] = Field(default_factory=list)
    latest_version: str = ""
    downloads: int = 0
    updated: datetime = Field(default_factory=utcnow)

    def find_version(self, version: str) -> Optional[VersionEntry]:
        return next((v for v in self.versions if v.version == version), None)


class Statistics(BaseModel):
    total_downloads: int = 0
    packages_by_license: Dict[str, int] = Field(default_factory=dict)
    packages_by_author: Dict[str, int] = Field(default_factory=dict)
    popular_packages: List[str] = Field(default_factory=list)


class RepositoryIndex(BaseModel):
    """Persisted catalog; insertion order of packages is preserved"""
    last_updated: datetime = Field(default_factory=utcnow)
    total_packages: int = 0
    packages: Dict[str, PackageEntry] = Field(default_factory=dict)
    statistics: Statistics = Field(default_factory=Statistics)


class ApiResponse(BaseModel):
    """Envelope for every JSON response"""
    success: bool
    message: Optional[str] = None
    data: Optional[Any] = None
    error: Optional[str] = None
