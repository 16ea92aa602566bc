# Copyright (c) 2025 adcl.io
# All Rights Reserved.
#
# This software is proprietary and confidential. Unauthorized copying,
# distribution, or use of this software is strictly prohibited.

"""
Archive Entry Selection and Path Safety

Turns include/exclude glob lists into an ordered entry list, and checks that
extracted paths stay inside their destination.
"""

import fnmatch
import glob
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, List, Optional

from criage.core.errors import PathTraversalError

logger = logging.getLogger(__name__)

METADATA_ENTRY = ".criage_metadata"
METADATA_JSON_ENTRY = ".criage_metadata.json"
METADATA_ENTRIES = (METADATA_ENTRY, METADATA_JSON_ENTRY)


@dataclass(frozen=True)
class ArchiveEntry:
    """One file or directory to write, with its archive-relative name"""
    path: Path
    arcname: str
    is_dir: bool


def is_excluded(relative_path: str, exclude: Iterable[str]) -> bool:
    """Match exclude globs against the relative path and the base name."""
    name = relative_path.rsplit("/", 1)[-1]
    for pattern in exclude:
        pattern = pattern.rstrip("/")
        if not pattern:
            continue
        if fnmatch.fnmatch(relative_path, pattern) or fnmatch.fnmatch(name, pattern):
            return True
    return False


def collect_entries(
    source_dir: Path,
    include: Optional[List[str]] = None,
    exclude: Optional[List[str]] = None,
    skip: Iterable[Path] = ()
) -> List[ArchiveEntry]:
    """
    Walk source_dir and return the entries selected by include/exclude.

    Args:
        source_dir: Root every arcname is relative to
        include: Paths or globs relative to source_dir; empty means the whole tree
        exclude: Globs; an excluded directory prunes its subtree
        skip: Absolute paths never added (e.g. the archive being written)

    Returns:
        Entries in deterministic order, parents before children

    Raises:
        FileNotFoundError: If source_dir or a literal include path is missing
    """
    root = Path(source_dir).absolute()
    if not root.is_dir():
        raise FileNotFoundError(f"Source directory not found: {root}")

    exclude = list(exclude or [])
    skipped = {Path(p).absolute() for p in skip}
    seen = set()
    entries: List[ArchiveEntry] = []

    def add(path: Path) -> None:
        if path in skipped or path.is_symlink():
            return

        if path == root:
            for child in sorted(path.iterdir()):
                add(child)
            return

        relative = path.relative_to(root).as_posix()
        if relative in seen:
            return
        if is_excluded(relative, exclude):
            logger.debug(f"Excluding {relative}")
            return

        if path.is_dir():
            seen.add(relative)
            entries.append(ArchiveEntry(path=path, arcname=relative, is_dir=True))
            for child in sorted(path.iterdir()):
                add(child)
        elif path.is_file():
            seen.add(relative)
            entries.append(ArchiveEntry(path=path, arcname=relative, is_dir=False))

    for pattern in include or ["."]:
        if glob.has_magic(pattern):
            for match in sorted(root.glob(pattern)):
                add(match.absolute())
            continue

        if ".." in Path(pattern).parts or Path(pattern).is_absolute():
            raise ValueError(f"Included path must stay inside {root}: {pattern}")
        target = root / pattern
        if not target.exists():
            raise FileNotFoundError(f"Included path not found: {pattern}")
        # Parent directories of a nested literal path are not archived themselves
        add(target)

    return entries


def resolve_within(root: Path, entry_name: str) -> Path:
    """
    Resolve an archive entry name under root.

    Raises:
        PathTraversalError: If the entry is absolute or climbs out of root
    """
    target = (root / entry_name).resolve()
    if target != root and root not in target.parents:
        raise PathTraversalError(entry_name, str(root))
    return target


def is_metadata_entry(entry_name: str) -> bool:
    name = entry_name[2:] if entry_name.startswith("./") else entry_name
    return name in METADATA_ENTRIES
