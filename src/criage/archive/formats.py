# Copyright (c) 2025 adcl.io
# All Rights Reserved.
#
# This software is proprietary and confidential. Unauthorized copying,
# distribution, or use of this software is strictly prohibited.

"""
Archive Format Definitions

The five container/codec combinations and suffix-based detection.
"""

from enum import Enum
from typing import Tuple, Union

from criage.core.errors import UnsupportedFormatError


class ArchiveFormat(str, Enum):
    """Archive container and compression codec"""
    TAR_ZST = "tar.zst"
    TAR_LZ4 = "tar.lz4"
    TAR_XZ = "tar.xz"
    TAR_GZ = "tar.gz"
    ZIP = "zip"

    @property
    def suffixes(self) -> Tuple[str, ...]:
        """File suffixes mapping to this format, longest first"""
        if self is ArchiveFormat.TAR_GZ:
            return (".tar.gz", ".tgz")
        return ("." + self.value,)

    @property
    def is_tar(self) -> bool:
        return self is not ArchiveFormat.ZIP

    @classmethod
    def parse(cls, value: Union[str, "ArchiveFormat"]) -> "ArchiveFormat":
        """
        Convert a format name to an ArchiveFormat.

        Raises:
            UnsupportedFormatError: If the name is not a known format
        """
        if isinstance(value, ArchiveFormat):
            return value
        normalized = str(value).strip().lower().lstrip(".")
        if normalized == "tgz":
            return cls.TAR_GZ
        try:
            return cls(normalized)
        except ValueError:
            raise UnsupportedFormatError(str(value))


def detect_format(filename: str) -> ArchiveFormat:
    """
    Classify a file name by suffix.

    Names that match no known suffix are treated as tar.zst; callers rely on
    this fallback instead of an error.
    """
    for archive_format in ArchiveFormat:
        if filename.endswith(archive_format.suffixes):
            return archive_format
    return ArchiveFormat.TAR_ZST


def strip_format_suffix(filename: str) -> Tuple[str, ArchiveFormat]:
    """
    Split a file name into its stem and format.

    Raises:
        UnsupportedFormatError: If the name carries no known suffix
    """
    lowered = filename.lower()
    matches = [
        (suffix, archive_format)
        for archive_format in ArchiveFormat
        for suffix in archive_format.suffixes
        if lowered.endswith(suffix)
    ]
    if not matches:
        raise UnsupportedFormatError(filename)

    suffix, archive_format = max(matches, key=lambda m: len(m[0]))
    return filename[:-len(suffix)], archive_format
