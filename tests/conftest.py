# Copyright (c) 2025 adcl.io
# All Rights Reserved.
#
# This software is proprietary and confidential. Unauthorized copying,
# distribution, or use of this software is strictly prohibited.

"""
Test Fixtures and Utilities

Provides pytest fixtures for temporary workspaces, a repository server
running in-process behind FastAPI's TestClient, and a package manager
wired to it.
"""

import os
import shutil
import sys
import tempfile
from pathlib import Path
from typing import Dict, List, Optional

import pytest
import yaml

# Add src to path for imports
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'src'))

from fastapi.testclient import TestClient

from criage.archive import ArchiveManager
from criage.core.config import Config, ConfigManager, RepositoryConfig
from criage.models import PackageHooks, PackageManifest, PackageMetadata
from criage.registry.client import RepositoryClient
from criage.registry.host import host_arch, host_os
from criage.registry.manager import PackageManager
from criage.repository.config import ServerConfig
from criage.repository.server import create_app

UPLOAD_TOKEN = "test-upload-token"
REPOSITORY_URL = "http://testserver/api/v1"


# ============================================================================
# Filesystem Fixtures
# ============================================================================

@pytest.fixture
def workspace():
    """Temporary directory removed after the test"""
    temp_dir = Path(tempfile.mkdtemp(prefix="criage_test_"))
    yield temp_dir
    shutil.rmtree(temp_dir, ignore_errors=True)


@pytest.fixture
def archive_manager():
    manager = ArchiveManager(compression_level=3, parallel=2)
    yield manager
    manager.close()


# ============================================================================
# Package Helpers
# ============================================================================

def write_project(
    base_dir: Path,
    name: str,
    version: str = "1.0.0",
    files: Optional[Dict[str, str]] = None,
    dependencies: Optional[Dict[str, str]] = None,
    hooks: Optional[PackageHooks] = None,
    **manifest_fields
) -> Path:
    """Create a package source directory with a criage.yaml."""
    project_dir = base_dir / f"{name}-src-{version}"
    project_dir.mkdir(parents=True, exist_ok=True)

    for relative, content in (files or {"bin/tool": "#!/bin/sh\necho hi\n"}).items():
        path = project_dir / relative
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content)

    manifest = PackageManifest(
        name=name,
        version=version,
        dependencies=dependencies or {},
        hooks=hooks,
        **manifest_fields
    )
    data = manifest.model_dump(exclude_none=True)
    (project_dir / "criage.yaml").write_text(yaml.safe_dump(data, sort_keys=False))
    return project_dir


def publish_to_storage(
    archive_manager: ArchiveManager,
    storage_path: Path,
    project_dir: Path,
    archive_format: str = "tar.zst"
) -> Path:
    """Build an archive for the host platform straight into repository storage."""
    manifest = PackageManifest.model_validate(yaml.safe_load((project_dir / "criage.yaml").read_text()))
    filename = f"{manifest.name}-{manifest.version}-{host_os()}-{host_arch()}.{archive_format}"
    dest = storage_path / filename
    archive_manager.create_archive_with_metadata(
        project_dir, dest, archive_format, None, None,
        PackageMetadata(package_manifest=manifest)
    )
    return dest


# ============================================================================
# Repository Server Fixtures
# ============================================================================

@pytest.fixture
def server_config(workspace):
    return ServerConfig(
        storage_path=str(workspace / "storage"),
        index_path=str(workspace / "index.json"),
        upload_token=UPLOAD_TOKEN,
        log_format="text",
        log_level="WARNING",
    )


@pytest.fixture
def repository_app(server_config):
    """Repository app; its index manager is closed by the shutdown hook"""
    return create_app(server_config)


@pytest.fixture
def api_client(repository_app):
    """TestClient against the in-process repository"""
    with TestClient(repository_app) as client:
        yield client


@pytest.fixture
def storage_path(server_config):
    return Path(server_config.storage_path)


def refresh(api_client: TestClient) -> dict:
    response = api_client.post(
        "/api/v1/refresh", headers={"Authorization": f"Bearer {UPLOAD_TOKEN}"}
    )
    assert response.status_code == 200, response.text
    return response.json()["data"]


# ============================================================================
# Package Manager Fixtures
# ============================================================================

@pytest.fixture
def client_config(workspace):
    return Config(
        global_path=str(workspace / "global"),
        local_path=str(workspace / "local"),
        cache_path=str(workspace / "cache"),
        temp_path=str(workspace / "tmp"),
        repositories=[RepositoryConfig(name="test", url=REPOSITORY_URL)],
        parallel=2,
    )


@pytest.fixture
def config_manager(workspace, client_config):
    return ConfigManager(config_path=str(workspace / "config.yaml"), config=client_config)


@pytest.fixture
def package_manager(config_manager, api_client, archive_manager):
    """PackageManager whose repository client talks to the in-process server"""
    client = RepositoryClient(config_manager.get_repositories(), http_client=api_client)
    with PackageManager(config_manager, archive_manager=archive_manager, client=client) as manager:
        yield manager
