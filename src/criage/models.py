# Copyright (c) 2025 adcl.io
# All Rights Reserved.
#
# This software is proprietary and confidential. Unauthorized copying,
# distribution, or use of this software is strictly prohibited.

"""
Package Data Models

Manifests, the metadata block embedded in archives, installed-package
records and search results.
"""

from typing import List, Dict, Optional, Any
from datetime import datetime, timezone
from pydantic import BaseModel, Field, field_validator


class PackageHooks(BaseModel):
    """Lifecycle shell commands, run in order"""
    pre_install: List[str] = Field(default_factory=list)
    post_install: List[str] = Field(default_factory=list)
    pre_remove: List[str] = Field(default_factory=list)
    post_remove: List[str] = Field(default_factory=list)
    pre_update: List[str] = Field(default_factory=list)
    post_update: List[str] = Field(default_factory=list)


class PackageManifest(BaseModel):
    """
    Declarative package description (criage.yaml).

    Dependency maps are name -> version-range strings; ranges are never
    resolved, presence of any installed version satisfies a dependency.
    """
    name: str
    version: str
    description: str = ""
    author: str = ""
    license: str = ""
    homepage: Optional[str] = None
    repository: Optional[str] = None
    keywords: List[str] = Field(default_factory=list)
    dependencies: Dict[str, str] = Field(default_factory=dict)
    dev_dependencies: Dict[str, str] = Field(default_factory=dict)
    scripts: Dict[str, str] = Field(default_factory=dict)
    files: List[str] = Field(default_factory=list)
    exclude: List[str] = Field(default_factory=list)
    arch: List[str] = Field(default_factory=list)
    os: List[str] = Field(default_factory=list)
    min_version: Optional[str] = None
    hooks: Optional[PackageHooks] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("name", "version")
    @classmethod
    def _not_empty(cls, value: str) -> str:
        if not value or not value.strip():
            raise ValueError("cannot be empty")
        return value

    class Config:
        json_schema_extra = {
            "example": {
                "name": "hello-tools",
                "version": "1.0.0",
                "description": "Greeting utilities",
                "files": ["bin/*", "README.md"],
                "dependencies": {"libgreet": "^2.0.0"},
                "hooks": {"post_install": ["chmod +x bin/hello"]}
            }
        }


class CompressionConfig(BaseModel):
    format: str = "tar.zst"
    level: int = 3


class BuildTarget(BaseModel):
    os: str
    arch: str


class BuildManifest(BaseModel):
    """Build-time configuration (build.json)"""
    name: str = ""
    version: str = ""
    build_script: str = ""
    build_env: Dict[str, str] = Field(default_factory=dict)
    output_dir: str = "./build"
    include_files: List[str] = Field(default_factory=list)
    exclude_files: List[str] = Field(default_factory=list)
    compression: CompressionConfig = Field(default_factory=CompressionConfig)
    targets: List[BuildTarget] = Field(default_factory=list)
    dependencies: Dict[str, str] = Field(default_factory=dict)
    test_command: Optional[str] = None
    install_hooks: Optional[PackageHooks] = None


class PackageMetadata(BaseModel):
    """
    Metadata block embedded inside a built archive.

    compression_type, created_at and created_by are stamped by the archive
    layer when the archive is written.
    """
    package_manifest: Optional[PackageManifest] = None
    build_manifest: Optional[BuildManifest] = None
    compression_type: str = ""
    created_at: str = ""
    created_by: str = ""
    checksum: Optional[str] = None

    def to_json(self) -> str:
        return self.model_dump_json(exclude_none=True)

    @classmethod
    def from_json(cls, data: str) -> "PackageMetadata":
        return cls.model_validate_json(data)


class PackageInfo(BaseModel):
    """
    Installed-package record, persisted at <install_path>/.criage/package.json
    """
    name: str
    version: str
    description: str = ""
    author: str = ""
    install_date: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    install_path: str
    global_: bool = Field(default=False, alias="global")
    dependencies: Dict[str, str] = Field(default_factory=dict)
    size: int = 0
    files: List[str] = Field(default_factory=list)
    scripts: Dict[str, str] = Field(default_factory=dict)

    model_config = {"populate_by_name": True}

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True, indent=2)


class SearchResult(BaseModel):
    """Search hit; score is computed by the repository that returned it"""
    name: str
    version: str = ""
    description: str = ""
    author: str = ""
    repository: Optional[str] = None
    downloads: int = 0
    updated: Optional[datetime] = None
    score: float = 0.0


class OperationResult(BaseModel):
    """Outcome of a lifecycle operation; advisory hook failures land in warnings"""
    name: str
    version: Optional[str] = None
    changed: bool = True
    package: Optional[PackageInfo] = None
    warnings: List[str] = Field(default_factory=list)
    error: Optional[str] = None
