# Copyright (c) 2025 adcl.io
# All Rights Reserved.
#
# This software is proprietary and confidential. Unauthorized copying,
# distribution, or use of this software is strictly prohibited.

"""
Installed-Package Registry

Single responsibility: track what is installed, per scope.

There is no central database: each installed package carries its own record
at <install_path>/.criage/package.json, and load() rebuilds the in-memory map
by scanning the local and global install roots.
"""

import logging
import os
from pathlib import Path
from typing import Dict, List, Optional, Tuple

from pydantic import ValidationError as PydanticValidationError

from criage.core.errors import NotFoundError
from criage.models import PackageInfo

from .locks import ReadWriteLock

logger = logging.getLogger(__name__)

RECORD_DIR = ".criage"
RECORD_FILE = "package.json"

# (package name, global scope)
RegistryKey = Tuple[str, bool]


def record_path(install_path: Path) -> Path:
    return Path(install_path) / RECORD_DIR / RECORD_FILE


class InstalledRegistry:
    """
    In-memory map of installed packages backed by per-package JSON records.

    Global and local installs are separate namespaces. Reads take a shared
    lock and return copies; writes take the exclusive lock, so readers never
    see a record that is only partly applied.
    """

    def __init__(self, local_path: Path, global_path: Path):
        """
        Initialize registry.

        Args:
            local_path: Root of local (project) installs
            global_path: Root of global installs
        """
        self.roots = {False: Path(local_path), True: Path(global_path)}
        self._packages: Dict[RegistryKey, PackageInfo] = {}
        self._lock = ReadWriteLock()

    def load(self) -> int:
        """
        Rebuild the map from the records found under both install roots.

        Returns:
            Number of packages loaded
        """
        loaded: Dict[RegistryKey, PackageInfo] = {}
        for global_install, root in self.roots.items():
            for info in self._scan_root(root):
                info.global_ = global_install
                loaded[(info.name, global_install)] = info

        with self._lock.write_locked():
            self._packages = loaded

        logger.debug(f"Loaded {len(loaded)} installed packages")
        return len(loaded)

    def _scan_root(self, root: Path) -> List[PackageInfo]:
        if not root.is_dir():
            return []

        records = []
        for package_dir in sorted(root.iterdir()):
            path = record_path(package_dir)
            if not package_dir.is_dir() or not path.exists():
                continue
            try:
                records.append(PackageInfo.model_validate_json(path.read_text()))
            except (OSError, PydanticValidationError) as e:
                logger.warning(f"Skipping unreadable package record {path}: {e}")
        return records

    def get(self, name: str, global_install: Optional[bool] = None) -> Optional[PackageInfo]:
        """
        Get an installed package record.

        Args:
            name: Package name
            global_install: Scope to look in; None checks local, then global

        Returns:
            Copy of the record, or None if not installed
        """
        scopes = [False, True] if global_install is None else [global_install]
        with self._lock.read_locked():
            for scope in scopes:
                info = self._packages.get((name, scope))
                if info is not None:
                    return info.model_copy(deep=True)
        return None

    def is_installed(self, name: str, global_install: Optional[bool] = None) -> bool:
        return self.get(name, global_install) is not None

    def list(self, global_install: Optional[bool] = None) -> List[PackageInfo]:
        """List installed packages sorted by name, optionally for one scope."""
        with self._lock.read_locked():
            packages = [
                info.model_copy(deep=True)
                for (_, scope), info in self._packages.items()
                if global_install is None or scope == global_install
            ]
        return sorted(packages, key=lambda p: (p.name, p.global_))

    def record(self, info: PackageInfo) -> None:
        """
        Persist a package record and publish it in the map.

        The JSON file is written to a temporary name and renamed, so the
        on-disk record is always either the old or the new one.
        """
        path = record_path(Path(info.install_path))
        stored = info.model_copy(deep=True)

        with self._lock.write_locked():
            path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path = path.with_name(path.name + ".tmp")
            tmp_path.write_text(stored.to_json())
            os.replace(tmp_path, path)
            self._packages[(stored.name, stored.global_)] = stored

    def remove(self, name: str, global_install: bool) -> PackageInfo:
        """
        Drop a package record from disk and from the map.

        Raises:
            NotFoundError: If the package is not installed in that scope
        """
        with self._lock.write_locked():
            info = self._packages.pop((name, global_install), None)
            if info is None:
                raise NotFoundError("Installed package", name)
            record_path(Path(info.install_path)).unlink(missing_ok=True)
        return info
