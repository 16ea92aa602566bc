# Copyright (c) 2025 adcl.io
# All Rights Reserved.
#
# This software is proprietary and confidential. Unauthorized copying,
# distribution, or use of this software is strictly prohibited.

"""
Installed-package registry and lifecycle.
"""

from .builder import PackageBuilder
from .client import RepositoryClient, ResolvedPackage
from .hooks import CommandRunner
from .manager import PackageManager
from .store import InstalledRegistry

__all__ = [
    "CommandRunner",
    "InstalledRegistry",
    "PackageBuilder",
    "PackageManager",
    "RepositoryClient",
    "ResolvedPackage",
]
