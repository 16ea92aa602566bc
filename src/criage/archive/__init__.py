# Copyright (c) 2025 adcl.io
# All Rights Reserved.
#
# This software is proprietary and confidential. Unauthorized copying,
# distribution, or use of this software is strictly prohibited.

"""
Archive codec layer

Exports:
- ArchiveManager: Create/extract archives and read embedded metadata
- ArchiveFormat: The five supported formats
- detect_format: Suffix-based format detection (tar.zst fallback)
"""

from .formats import ArchiveFormat, detect_format, strip_format_suffix
from .manager import ArchiveManager

__all__ = [
    "ArchiveFormat",
    "ArchiveManager",
    "detect_format",
    "strip_format_suffix",
]
