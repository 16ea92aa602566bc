# Copyright (c) 2025 adcl.io
# All Rights Reserved.
#
# This software is proprietary and confidential. Unauthorized copying,
# distribution, or use of this software is strictly prohibited.

"""
Package Lifecycle Manager

Install, uninstall, update, list, search, build and publish packages.

Hook failure policy:
- pre_install hooks and dependency failures abort the install before anything
  is recorded
- post_install, pre/post_remove and pre/post_update hooks are advisory: their
  failures are returned as warnings and the operation still succeeds
"""

import logging
import re
import shutil
import tempfile
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from criage.archive import ArchiveManager
from criage.core.config import MANIFEST_FILENAME, ConfigManager
from criage.core.logging import configure_logging
from criage.core.errors import (
    CriageError,
    DependencyError,
    IntegrityError,
    NotFoundError,
    ValidationError,
    sanitize_error_for_user,
)
from criage.models import OperationResult, PackageInfo, PackageManifest, PackageMetadata, SearchResult
from criage.signing import gpg

from .builder import PackageBuilder
from .client import RepositoryClient, ResolvedPackage
from .hooks import CommandRunner
from .host import host_arch, host_os
from .manifests import load_manifest
from .store import InstalledRegistry

logger = logging.getLogger(__name__)

# A dependency spec that names one version rather than a range
EXACT_VERSION = re.compile(r"^v?\d+(\.\d+)*([-+][0-9A-Za-z.-]+)?$")

PARTIAL_SUFFIXES = (".part", ".asc")


def _dependency_version(spec: str) -> Optional[str]:
    spec = (spec or "").strip()
    if EXACT_VERSION.match(spec):
        return spec.lstrip("v")
    return None


def _directory_size(path: Path) -> int:
    return sum(f.stat().st_size for f in path.rglob("*") if f.is_file() and not f.is_symlink())


class PackageManager:
    """
    Installed-package lifecycle.

    Construct one per process and close it (or use it as a context manager)
    when done; it owns the zstd codec pool and the HTTP client.
    """

    def __init__(
        self,
        config_manager: Optional[ConfigManager] = None,
        archive_manager: Optional[ArchiveManager] = None,
        client: Optional[RepositoryClient] = None,
        runner: Optional[CommandRunner] = None,
        registry: Optional[InstalledRegistry] = None
    ):
        """
        Initialize package manager.

        Args:
            config_manager: Client configuration (defaults to CRIAGE_CONFIG_PATH)
            archive_manager: Archive codecs
            client: Repository client
            runner: Hook and build-script runner
            registry: Installed-package registry
        """
        self.config_manager = config_manager or ConfigManager()
        config = self.config_manager.config
        configure_logging(config.log_level, config.log_format, config.log_file)

        self._owned = []
        if archive_manager is None:
            archive_manager = ArchiveManager(
                compression_level=config.compression_level,
                parallel=config.parallel,
            )
            self._owned.append(archive_manager)
        if client is None:
            client = RepositoryClient(
                config.repositories, timeout=config.timeout, retries=config.retry_count
            )
            self._owned.append(client)

        self.archive_manager = archive_manager
        self.client = client
        self.runner = runner or CommandRunner()
        self.registry = registry or InstalledRegistry(
            self.config_manager.install_path("", False),
            self.config_manager.install_path("", True),
        )
        self.builder = PackageBuilder(self.archive_manager, self.runner, self.client, config.keyring_path)

        self.config_manager.ensure_directories()
        self.registry.load()

    def __enter__(self) -> "PackageManager":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def close(self) -> None:
        """Release the resources this manager created."""
        for resource in self._owned:
            resource.close()
        self._owned = []

    @property
    def config(self):
        return self.config_manager.config

    # =========================================================================
    # INSTALL
    # =========================================================================

    def install(
        self,
        name: str,
        version: Optional[str] = None,
        global_install: bool = False,
        force: bool = False,
        dev: bool = False,
        arch: Optional[str] = None,
        os_name: Optional[str] = None
    ) -> OperationResult:
        """
        Install a package and its dependency closure.

        Args:
            name: Package name
            version: Exact version, or None for the latest
            global_install: Install into the global scope
            force: Reinstall even if present, wiping the previous install
            dev: Also install dev_dependencies
            arch: Target architecture (default: host)
            os_name: Target OS (default: host)

        Returns:
            OperationResult; changed is False when the package was already present

        Raises:
            NotFoundError: No repository has the package
            DependencyError: A dependency could not be installed, or a cycle
            HookExecutionError: A pre_install hook failed
            IntegrityError: Checksum or signature verification failed
        """
        return self._install(name, version, global_install, force, dev, arch, os_name, chain=[])

    def _install(
        self,
        name: str,
        version: Optional[str],
        global_install: bool,
        force: bool,
        dev: bool,
        arch: Optional[str],
        os_name: Optional[str],
        chain: List[str]
    ) -> OperationResult:
        if name in chain:
            cycle = " -> ".join(chain + [name])
            raise DependencyError(f"Dependency cycle detected: {cycle}", package=name)

        if not force:
            installed = self.registry.get(name, global_install)
            if installed is not None and (version is None or installed.version == version):
                logger.info(f"Package {name} already installed (version {installed.version})")
                return OperationResult(
                    name=name, version=installed.version, changed=False, package=installed
                )

        logger.info(f"Installing package {name}...")
        arch = arch or host_arch()
        os_name = os_name or host_os()

        archive_path = self._fetch(name, version, os_name, arch)

        temp_root = self.config_manager.temp_path()
        temp_root.mkdir(parents=True, exist_ok=True)
        scratch = Path(tempfile.mkdtemp(prefix=f"install_{name}_", dir=temp_root))
        try:
            self.archive_manager.extract_archive(archive_path, scratch)
            manifest = load_manifest(scratch)
            if manifest.name != name:
                raise ValidationError(
                    f"Archive for {name} contains package {manifest.name}", field="name"
                )

            self._install_dependencies(manifest, global_install, dev, arch, os_name, chain + [name])

            hooks = manifest.hooks
            if hooks and hooks.pre_install:
                logger.info(f"Running pre-install hooks for {name}")
                self.runner.run_all(hooks.pre_install, cwd=scratch)

            install_path = self.config_manager.install_path(name, global_install)
            if force and install_path.exists():
                shutil.rmtree(install_path)
            install_path.mkdir(parents=True, exist_ok=True)

            files = self._copy_files(scratch, install_path, manifest.files)

            info = PackageInfo(
                name=manifest.name,
                version=manifest.version,
                description=manifest.description,
                author=manifest.author,
                install_path=str(install_path),
                global_=global_install,
                dependencies=dict(manifest.dependencies),
                size=_directory_size(install_path),
                files=files,
                scripts=dict(manifest.scripts),
            )
            self.registry.record(info)
        finally:
            shutil.rmtree(scratch, ignore_errors=True)

        result = OperationResult(name=name, version=info.version, package=info)
        if hooks and hooks.post_install:
            self._run_advisory("post-install", hooks.post_install, install_path, result)

        logger.info(f"Package {name} version {info.version} installed")
        return result

    def _install_dependencies(
        self,
        manifest: PackageManifest,
        global_install: bool,
        dev: bool,
        arch: str,
        os_name: str,
        chain: List[str]
    ) -> None:
        dependencies = dict(manifest.dependencies)
        if dev:
            dependencies.update(manifest.dev_dependencies)

        for dependency, spec in dependencies.items():
            if dependency in chain:
                cycle = " -> ".join(chain + [dependency])
                raise DependencyError(f"Dependency cycle detected: {cycle}", package=dependency)
            # Any installed version in either scope satisfies a dependency
            if self.registry.is_installed(dependency):
                continue

            logger.info(f"Installing dependency {dependency} of {manifest.name}")
            try:
                self._install(
                    dependency, _dependency_version(spec), global_install,
                    False, False, arch, os_name, chain
                )
            except DependencyError:
                raise
            except CriageError as e:
                raise DependencyError(
                    f"Failed to install dependency {dependency} of {manifest.name}: {e.message}",
                    package=dependency
                )

    def _cached_archive(self, name: str, version: str) -> Optional[Path]:
        cache_dir = self.config_manager.cache_path(name, version)
        if not cache_dir.is_dir():
            return None
        for candidate in sorted(cache_dir.iterdir()):
            if candidate.is_file() and not candidate.name.endswith(PARTIAL_SUFFIXES):
                return candidate
        return None

    def _fetch(self, name: str, version: Optional[str], os_name: str, arch: str) -> Path:
        """Return a local archive for the package, downloading it if not cached."""
        if version:
            cached = self._cached_archive(name, version)
            if cached is not None:
                logger.info(f"Using cached archive {cached}")
                return cached

        package = self.client.find_package(name, version, os_name, arch)
        dest = self.config_manager.cache_path(name, package.version) / package.filename
        if dest.exists():
            logger.info(f"Using cached archive {dest}")
            return dest

        self.client.download(package, dest, verify=self.config.verify_hashes)
        if package.repository.fingerprint:
            self._verify_signature(package, dest)
        return dest

    def _verify_signature(self, package: ResolvedPackage, archive_path: Path) -> None:
        signature_path = archive_path.with_name(archive_path.name + ".asc")
        try:
            self.client.fetch_signature(package, signature_path)
            valid, reason = gpg.verify_archive(
                archive_path, signature_path, package.repository.fingerprint, self.config.keyring_path
            )
        except (CriageError, gpg.GPGNotFoundError, FileNotFoundError) as e:
            valid, reason = False, str(e)
        finally:
            signature_path.unlink(missing_ok=True)

        if not valid:
            archive_path.unlink(missing_ok=True)
            raise IntegrityError(
                f"Signature verification failed for {package.filename}: {reason}",
                path=str(archive_path)
            )

    @staticmethod
    def _copy_files(src_dir: Path, dest_dir: Path, patterns: List[str]) -> List[str]:
        """
        Copy the manifest's declared files into the install directory.

        Returns:
            Installed file paths relative to dest_dir
        """
        copied = set()
        sources = []
        for pattern in list(patterns or ["*"]) + [MANIFEST_FILENAME]:
            sources.extend(sorted(src_dir.glob(pattern)))

        for src in sources:
            if src.is_symlink():
                continue
            relative = src.relative_to(src_dir)
            dst = dest_dir / relative
            if src.is_dir():
                shutil.copytree(src, dst, dirs_exist_ok=True, symlinks=False)
                copied.update(
                    f.relative_to(src_dir).as_posix() for f in src.rglob("*") if f.is_file()
                )
            elif src.is_file():
                dst.parent.mkdir(parents=True, exist_ok=True)
                shutil.copy2(src, dst)
                copied.add(relative.as_posix())

        return sorted(copied)

    def _run_advisory(
        self,
        stage: str,
        commands: List[str],
        cwd: Path,
        result: OperationResult
    ) -> None:
        try:
            self.runner.run_all(commands, cwd=cwd)
        except CriageError as e:
            warning = f"{stage} hooks failed: {e.message}"
            logger.warning(f"{result.name}: {warning}")
            result.warnings.append(warning)

    # =========================================================================
    # UNINSTALL / UPDATE
    # =========================================================================

    def uninstall(self, name: str, global_install: bool = False, purge: bool = False) -> OperationResult:
        """
        Remove an installed package.

        Raises:
            NotFoundError: The package is not installed in that scope
        """
        info = self.registry.get(name, global_install)
        if info is None:
            raise NotFoundError("Installed package", name)

        logger.info(f"Removing package {name}...")
        result = OperationResult(name=name, version=info.version)
        install_path = Path(info.install_path)

        manifest = None
        try:
            manifest = load_manifest(install_path)
        except CriageError as e:
            result.warnings.append(f"failed to load manifest: {e.message}")
            logger.warning(f"{name}: failed to load manifest: {e.message}")

        hooks = manifest.hooks if manifest else None
        if hooks and hooks.pre_remove:
            self._run_advisory("pre-remove", hooks.pre_remove, install_path, result)

        shutil.rmtree(install_path, ignore_errors=True)
        self.registry.remove(name, global_install)

        if hooks and hooks.post_remove:
            self._run_advisory("post-remove", hooks.post_remove, install_path.parent, result)

        if purge:
            removed = self.config_manager.remove_settings(f"{name}.")
            cache_dir = Path(self.config.cache_path).expanduser() / name
            shutil.rmtree(cache_dir, ignore_errors=True)
            logger.info(f"Purged {len(removed)} settings and cached archives of {name}")

        logger.info(f"Package {name} removed")
        return result

    def update(self, name: str, global_install: Optional[bool] = None) -> OperationResult:
        """
        Update an installed package to the repository's latest version.

        Raises:
            NotFoundError: The package is not installed
        """
        info = self.registry.get(name, global_install)
        if info is None:
            raise NotFoundError("Installed package", name)

        logger.info(f"Checking updates for {name}...")
        latest = self.client.find_package(name, None, host_os(), host_arch())
        if latest.version == info.version:
            logger.info(f"Package {name} is up to date (version {info.version})")
            return OperationResult(name=name, version=info.version, changed=False, package=info)

        warnings: List[str] = []
        install_path = Path(info.install_path)
        try:
            old_manifest = load_manifest(install_path)
        except CriageError:
            old_manifest = None
        if old_manifest and old_manifest.hooks and old_manifest.hooks.pre_update:
            pre = OperationResult(name=name)
            self._run_advisory("pre-update", old_manifest.hooks.pre_update, install_path, pre)
            warnings.extend(pre.warnings)

        logger.info(f"Updating {name} from {info.version} to {latest.version}")
        result = self.install(name, latest.version, global_install=info.global_, force=True)
        result.warnings[:0] = warnings

        try:
            new_manifest = load_manifest(install_path)
        except CriageError:
            new_manifest = None
        if new_manifest and new_manifest.hooks and new_manifest.hooks.post_update:
            self._run_advisory("post-update", new_manifest.hooks.post_update, install_path, result)

        return result

    def update_all(self) -> List[OperationResult]:
        """Update every installed package; one failure does not stop the rest."""
        results = []
        for info in self.registry.list():
            try:
                results.append(self.update(info.name, info.global_))
            except CriageError as e:
                logger.error(f"Failed to update {info.name}: {e.message}")
                results.append(OperationResult(
                    name=info.name,
                    version=info.version,
                    changed=False,
                    error=sanitize_error_for_user(e, include_type=False),
                ))
        return results

    # =========================================================================
    # QUERIES
    # =========================================================================

    def list_packages(self, global_install: Optional[bool] = None, outdated: bool = False) -> List[PackageInfo]:
        """
        List installed packages sorted by name.

        Args:
            global_install: Restrict to one scope
            outdated: Keep only packages with a different version in the repositories
        """
        packages = self.registry.list(global_install)
        if not outdated:
            return packages

        stale = []
        for info in packages:
            try:
                latest = self.client.find_package(info.name, None, host_os(), host_arch())
            except CriageError as e:
                logger.warning(f"Failed to check updates for {info.name}: {e.message}")
                continue
            if latest.version != info.version:
                stale.append(info)
        return stale

    def info(self, name: str, global_install: Optional[bool] = None) -> PackageInfo:
        info = self.registry.get(name, global_install)
        if info is None:
            raise NotFoundError("Installed package", name)
        return info

    def search(self, query: str) -> List[SearchResult]:
        return self.client.search(query)

    def inspect_metadata(self, archive_path: Union[str, Path]) -> PackageMetadata:
        """Read the metadata embedded in any archive file."""
        archive_path = Path(archive_path)
        if not archive_path.is_file():
            raise NotFoundError("Archive", str(archive_path))
        return self.archive_manager.extract_metadata(archive_path)

    # =========================================================================
    # AUTHORING
    # =========================================================================

    def create(
        self,
        name: str,
        template: str = "basic",
        author: str = "",
        description: str = "",
        base_dir: Union[str, Path] = "."
    ) -> Path:
        return self.builder.create(name, template, author, description, base_dir)

    def build(
        self,
        project_dir: Union[str, Path] = ".",
        output_path: Optional[Union[str, Path]] = None,
        archive_format: Optional[str] = None,
        compression_level: Optional[int] = None
    ) -> Path:
        """Build an archive; format and level default to the client config."""
        return self.builder.build(
            project_dir,
            output_path,
            archive_format or self.config.compression_format,
            compression_level if compression_level is not None else self.config.compression_level,
        )

    def publish(
        self,
        registry_url: str,
        token: Optional[str] = None,
        project_dir: Union[str, Path] = ".",
        sign_key: Optional[str] = None,
        passphrase: Optional[str] = None
    ) -> Dict[str, Any]:
        return self.builder.publish(registry_url, token, project_dir, sign_key, passphrase)
