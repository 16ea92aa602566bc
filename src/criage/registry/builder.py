# Copyright (c) 2025 adcl.io
# All Rights Reserved.
#
# This software is proprietary and confidential. Unauthorized copying,
# distribution, or use of this software is strictly prohibited.

"""
Package Builder

Single responsibility: scaffold, build and publish packages from a project
directory.
"""

import logging
import shutil
import tempfile
from pathlib import Path
from typing import Any, Dict, Optional, Union

from criage.archive import ArchiveFormat, ArchiveManager
from criage.core.config import COMPRESSION_NORMAL, MANIFEST_FILENAME
from criage.core.errors import ValidationError
from criage.models import (
    BuildManifest,
    BuildTarget,
    CompressionConfig,
    PackageManifest,
    PackageMetadata,
)
from criage.signing import gpg

from .client import RepositoryClient
from .hooks import CommandRunner
from .host import host_arch, host_os
from .manifests import load_build_manifest, load_manifest, save_manifest

logger = logging.getLogger(__name__)

README_TEMPLATE = """# {name}

{description}

## Installation

```bash
criage install {name}
```
"""


class PackageBuilder:
    """Creates package skeletons, builds archives and uploads them"""

    def __init__(
        self,
        archive_manager: ArchiveManager,
        runner: CommandRunner,
        client: RepositoryClient,
        keyring_dir: Optional[str] = None
    ):
        self.archive_manager = archive_manager
        self.runner = runner
        self.client = client
        self.keyring_dir = keyring_dir

    def create(
        self,
        name: str,
        template: str = "basic",
        author: str = "",
        description: str = "",
        base_dir: Union[str, Path] = "."
    ) -> Path:
        """
        Scaffold a new package directory.

        Returns:
            Path to the package directory

        Raises:
            ValidationError: If a manifest already exists there
        """
        package_dir = Path(base_dir) / name
        if (package_dir / MANIFEST_FILENAME).exists():
            raise ValidationError(f"Package already exists: {package_dir}", field="name")

        package_dir.mkdir(parents=True, exist_ok=True)
        manifest = PackageManifest(
            name=name,
            version="1.0.0",
            description=description,
            author=author,
            license="MIT",
            files=["*"],
            exclude=[".git", "node_modules", "*.log"],
            arch=["amd64", "arm64"],
            os=["linux", "darwin", "windows"],
            min_version="1.0.0",
            metadata={"template": template},
        )
        save_manifest(package_dir, manifest)
        (package_dir / "README.md").write_text(
            README_TEMPLATE.format(name=name, description=description), encoding="utf-8"
        )
        for directory in ("src", "bin", "docs"):
            (package_dir / directory).mkdir(exist_ok=True)

        logger.info(f"Package {name} created in {package_dir}")
        return package_dir

    def build(
        self,
        project_dir: Union[str, Path] = ".",
        output_path: Optional[Union[str, Path]] = None,
        archive_format: Union[str, ArchiveFormat] = ArchiveFormat.TAR_ZST,
        compression_level: int = COMPRESSION_NORMAL
    ) -> Path:
        """
        Build the project into an archive with embedded metadata.

        Uses build.json when present, otherwise derives a build manifest from
        criage.yaml targeting the host platform. The build script runs with
        build_env merged over the inherited environment.

        Returns:
            Path to the built archive

        Raises:
            NotFoundError: No criage.yaml in project_dir
            HookExecutionError: Build script exited non-zero
            UnsupportedFormatError: Unknown archive format
        """
        project_dir = Path(project_dir)
        fmt = ArchiveFormat.parse(archive_format)
        manifest = load_manifest(project_dir)

        build_manifest = load_build_manifest(project_dir)
        if build_manifest is None:
            build_manifest = BuildManifest(
                name=manifest.name,
                version=manifest.version,
                build_script=manifest.scripts.get("build", ""),
                include_files=list(manifest.files),
                exclude_files=list(manifest.exclude),
                compression=CompressionConfig(format=fmt.value, level=compression_level),
                targets=[BuildTarget(os=host_os(), arch=host_arch())],
                dependencies=dict(manifest.dependencies),
            )

        if build_manifest.build_script:
            logger.info(f"Running build script: {build_manifest.build_script}")
            self.runner.run(build_manifest.build_script, cwd=project_dir, env=build_manifest.build_env)

        if output_path is None:
            output_path = project_dir / f"{manifest.name}-{manifest.version}.{fmt.value}"
        output_path = Path(output_path)

        include = list(build_manifest.include_files)
        if include and MANIFEST_FILENAME not in include:
            # Installers read the manifest back out of the archive
            include.append(MANIFEST_FILENAME)

        metadata = PackageMetadata(package_manifest=manifest, build_manifest=build_manifest)
        self._archive(project_dir, output_path, fmt, include, build_manifest.exclude_files,
                      metadata, compression_level)

        logger.info(f"Package built with embedded metadata: {output_path}")
        return output_path

    def _archive(self, project_dir, output_path, fmt, include, exclude, metadata, compression_level):
        if compression_level == self.archive_manager.compression_level:
            self.archive_manager.create_archive_with_metadata(
                project_dir, output_path, fmt, include, exclude, metadata
            )
            return

        with ArchiveManager(compression_level=compression_level, parallel=1) as archive_manager:
            archive_manager.create_archive_with_metadata(
                project_dir, output_path, fmt, include, exclude, metadata
            )

    def publish(
        self,
        registry_url: str,
        token: Optional[str],
        project_dir: Union[str, Path] = ".",
        sign_key: Optional[str] = None,
        passphrase: Optional[str] = None
    ) -> Dict[str, Any]:
        """
        Build a tar.zst for the host platform and upload it.

        The temporary archive (and signature) are removed whatever the
        upload outcome.

        Args:
            registry_url: Repository API base URL (e.g. http://host:8080/api/v1)
            token: Upload token sent as a bearer token
            project_dir: Project to build
            sign_key: GPG key ID; when set a detached signature is uploaded too
            passphrase: Passphrase for sign_key

        Returns:
            Repository response data ({filename, size})
        """
        manifest = load_manifest(project_dir)
        work_dir = Path(tempfile.mkdtemp(prefix="criage_publish_"))
        archive_path = work_dir / (
            f"{manifest.name}-{manifest.version}-{host_os()}-{host_arch()}.{ArchiveFormat.TAR_ZST.value}"
        )

        try:
            self.build(project_dir, archive_path, ArchiveFormat.TAR_ZST, COMPRESSION_NORMAL)

            signature_path = None
            if sign_key:
                signature_path = gpg.sign_archive(archive_path, sign_key, self.keyring_dir, passphrase)

            result = self.client.upload(
                registry_url, token, archive_path, manifest.name, manifest.version, signature_path
            )
        finally:
            shutil.rmtree(work_dir, ignore_errors=True)

        logger.info(f"Package {manifest.name} version {manifest.version} published")
        return result
