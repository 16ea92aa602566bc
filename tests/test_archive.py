# Copyright (c) 2025 adcl.io
# All Rights Reserved.
#
# This software is proprietary and confidential. Unauthorized copying,
# distribution, or use of this software is strictly prohibited.

"""
Unit Tests for the Archive Codec Layer

Tests archive creation/extraction in every format, embedded metadata,
path traversal rejection and format detection.
"""

import io
import os
import stat
import tarfile
import threading
import zipfile
from pathlib import Path

import pytest

from criage.archive import ArchiveFormat, ArchiveManager, detect_format, strip_format_suffix
from criage.archive.codecs import ZIP_COMMENT_LIMIT
from criage.archive.files import METADATA_JSON_ENTRY, collect_entries
from criage.core.errors import MetadataNotFoundError, PathTraversalError, UnsupportedFormatError
from criage.models import BuildManifest, CompressionConfig, PackageHooks, PackageManifest, PackageMetadata

ALL_FORMATS = [fmt.value for fmt in ArchiveFormat]


def _make_tree(root: Path) -> Path:
    source = root / "source"
    (source / "bin").mkdir(parents=True)
    (source / "lib" / "nested" / "deep").mkdir(parents=True)
    (source / "empty_dir").mkdir()
    (source / "bin" / "tool").write_text("#!/bin/sh\necho tool\n")
    os.chmod(source / "bin" / "tool", 0o755)
    (source / "lib" / "nested" / "deep" / "data.txt").write_text("deep data")
    (source / "lib" / "empty.txt").write_bytes(b"")
    (source / "README.md").write_text("readme")
    os.chmod(source / "README.md", 0o600)
    (source / "debug.log").write_text("noise")
    (source / ".git").mkdir()
    (source / ".git" / "HEAD").write_text("ref: refs/heads/main")
    return source


def _snapshot(root: Path) -> dict:
    result = {}
    for path in sorted(root.rglob("*")):
        relative = path.relative_to(root).as_posix()
        if path.is_dir():
            result[relative] = None
        else:
            result[relative] = (path.read_bytes(), stat.S_IMODE(path.stat().st_mode))
    return result


class TestArchiveRoundTrip:
    """Test that extracting a created archive reproduces the tree"""

    @pytest.mark.parametrize("archive_format", ALL_FORMATS)
    def test_round_trip(self, workspace, archive_manager, archive_format):
        """Test file set, contents and mode bits survive every format"""
        source = _make_tree(workspace)
        archive = workspace / f"out.{archive_format}"
        dest = workspace / "dest"

        archive_manager.create_archive(source, archive, archive_format)
        archive_manager.extract_archive(archive, dest)

        assert _snapshot(dest) == _snapshot(source)

    @pytest.mark.parametrize("archive_format", ALL_FORMATS)
    def test_excluded_paths_are_pruned(self, workspace, archive_manager, archive_format):
        """Test excluded files and whole excluded directories are left out"""
        source = _make_tree(workspace)
        archive = workspace / f"out.{archive_format}"
        dest = workspace / "dest"

        archive_manager.create_archive(source, archive, archive_format, exclude=[".git", "*.log"])
        archive_manager.extract_archive(archive, dest)

        assert not (dest / ".git").exists()
        assert not (dest / "debug.log").exists()
        assert (dest / "lib" / "nested" / "deep" / "data.txt").read_text() == "deep data"
        assert (dest / "lib" / "empty.txt").read_bytes() == b""

    def test_include_globs_select_files(self, workspace, archive_manager):
        """Test include patterns limit the archive to the matched paths"""
        source = _make_tree(workspace)
        archive = workspace / "out.tar.gz"
        dest = workspace / "dest"

        archive_manager.create_archive(source, archive, "tar.gz", include=["bin/*", "README.md"])
        archive_manager.extract_archive(archive, dest)

        assert sorted(p.relative_to(dest).as_posix() for p in dest.rglob("*") if p.is_file()) == [
            "README.md", "bin/tool"
        ]

    def test_archive_inside_source_is_not_archived(self, workspace, archive_manager):
        """Test the archive being written is skipped by the directory walk"""
        source = _make_tree(workspace)
        archive = source / "self.tar.zst"
        dest = workspace / "dest"

        archive_manager.create_archive(source, archive, "tar.zst")
        archive_manager.extract_archive(archive, dest)

        assert not (dest / "self.tar.zst").exists()

    def test_unknown_format_rejected(self, workspace, archive_manager):
        """Test creating with an unknown format raises UnsupportedFormatError"""
        source = _make_tree(workspace)
        with pytest.raises(UnsupportedFormatError):
            archive_manager.create_archive(source, workspace / "out.rar", "rar")

    def test_missing_source_leaves_no_archive(self, workspace, archive_manager):
        """Test a failed create does not leave a file behind"""
        with pytest.raises(FileNotFoundError):
            archive_manager.create_archive(workspace / "missing", workspace / "out.tar.zst", "tar.zst")
        assert not (workspace / "out.tar.zst").exists()

    def test_concurrent_zstd_operations(self, workspace):
        """Test concurrent creates and extracts sharing one codec pool"""
        source = _make_tree(workspace)
        errors = []

        with ArchiveManager(parallel=2) as manager:
            def worker(i):
                try:
                    archive = workspace / f"out-{i}.tar.zst"
                    dest = workspace / f"dest-{i}"
                    manager.create_archive(source, archive, "tar.zst")
                    manager.extract_archive(archive, dest)
                    assert _snapshot(dest) == _snapshot(source)
                except Exception as e:  # collected for the main thread
                    errors.append(e)

            threads = [threading.Thread(target=worker, args=(i,)) for i in range(8)]
            for t in threads:
                t.start()
            for t in threads:
                t.join()

        assert errors == []


class TestArchiveMetadata:
    """Test the metadata block embedded in archives"""

    @pytest.fixture
    def metadata(self):
        manifest = PackageManifest(
            name="héllo-wörld",
            version="2.1.0",
            description="Grüße, 世界 🌍",
            dependencies={},
            scripts={},
            hooks=PackageHooks(post_install=["echo done"]),
        )
        build = BuildManifest(
            name="héllo-wörld",
            version="2.1.0",
            build_env={},
            compression=CompressionConfig(format="tar.zst", level=3),
        )
        return PackageMetadata(package_manifest=manifest, build_manifest=build)

    @pytest.mark.parametrize("archive_format", ALL_FORMATS)
    def test_metadata_round_trip(self, workspace, archive_manager, metadata, archive_format):
        """Test the metadata read back equals the metadata written"""
        source = _make_tree(workspace)
        archive = workspace / f"pkg.{archive_format}"

        archive_manager.create_archive_with_metadata(source, archive, archive_format, None, None, metadata)
        restored = archive_manager.extract_metadata(archive)

        assert restored == metadata
        assert restored.compression_type == archive_format
        assert restored.created_by.startswith("criage/")
        assert restored.package_manifest.homepage is None
        assert restored.package_manifest.dependencies == {}

    @pytest.mark.parametrize("archive_format", ALL_FORMATS)
    def test_metadata_entry_not_extracted(self, workspace, archive_manager, metadata, archive_format):
        """Test extraction skips the metadata marker entries"""
        source = _make_tree(workspace)
        archive = workspace / f"pkg.{archive_format}"
        dest = workspace / "dest"

        archive_manager.create_archive_with_metadata(source, archive, archive_format, None, None, metadata)
        archive_manager.extract_archive(archive, dest)

        assert not list(dest.glob(".criage_metadata*"))
        assert _snapshot(dest) == _snapshot(source)

    @pytest.mark.parametrize("archive_format", ALL_FORMATS)
    def test_archive_without_metadata(self, workspace, archive_manager, archive_format):
        """Test a plain archive raises MetadataNotFoundError"""
        source = _make_tree(workspace)
        archive = workspace / f"plain.{archive_format}"
        archive_manager.create_archive(source, archive, archive_format)

        with pytest.raises(MetadataNotFoundError):
            archive_manager.extract_metadata(archive)

    def test_zip_comment_alone_is_enough(self, workspace, archive_manager, metadata):
        """Test zip metadata is found from the comment when the entry is absent"""
        archive = workspace / "comment.zip"
        with zipfile.ZipFile(archive, "w") as zf:
            zf.comment = metadata.to_json().encode("utf-8")
            zf.writestr("payload.txt", "x")

        assert archive_manager.extract_metadata(archive).package_manifest.name == "héllo-wörld"

    def test_zip_entry_alone_is_enough(self, workspace, archive_manager, metadata):
        """Test zip metadata is found from the entry when the comment is absent"""
        archive = workspace / "entry.zip"
        with zipfile.ZipFile(archive, "w") as zf:
            zf.writestr(METADATA_JSON_ENTRY, metadata.to_json())
            zf.writestr("payload.txt", "x")

        assert archive_manager.extract_metadata(archive).package_manifest.version == "2.1.0"

    def test_oversized_metadata_skips_zip_comment(self, workspace, archive_manager, metadata):
        """Test metadata beyond the comment limit is still stored as an entry"""
        metadata.package_manifest.metadata = {"blob": "x" * (ZIP_COMMENT_LIMIT + 10)}
        source = _make_tree(workspace)
        archive = workspace / "big.zip"

        archive_manager.create_archive_with_metadata(source, archive, "zip", None, None, metadata)

        with zipfile.ZipFile(archive) as zf:
            assert zf.comment == b""
        assert archive_manager.extract_metadata(archive).package_manifest.metadata["blob"].startswith("xxx")

    def test_tar_metadata_stops_at_first_payload_entry(self, workspace, archive_manager, metadata):
        """Test a metadata entry placed after payload is not found"""
        archive = workspace / "late.tar.gz"
        with tarfile.open(archive, "w:gz") as tar:
            payload = tarfile.TarInfo("payload.txt")
            payload.size = 1
            tar.addfile(payload, io.BytesIO(b"x"))
            content = metadata.to_json().encode("utf-8")
            late = tarfile.TarInfo(".criage_metadata.json")
            late.size = len(content)
            tar.addfile(late, io.BytesIO(content))

        with pytest.raises(MetadataNotFoundError):
            archive_manager.extract_metadata(archive)


class TestPathTraversal:
    """Test extraction refuses entries escaping the destination"""

    @pytest.mark.parametrize("entry_name", ["../../evil", "/tmp/criage-absolute-evil"])
    def test_tar_traversal_rejected(self, workspace, archive_manager, entry_name):
        """Test tar entries climbing out of the destination abort extraction"""
        archive = workspace / "evil.tar.gz"
        with tarfile.open(archive, "w:gz", format=tarfile.PAX_FORMAT) as tar:
            info = tarfile.TarInfo(entry_name)
            info.size = 4
            tar.addfile(info, io.BytesIO(b"evil"))

        dest = workspace / "a" / "b" / "dest"
        with pytest.raises(PathTraversalError):
            archive_manager.extract_archive(archive, dest)

        assert not (workspace / "a" / "evil").exists()
        assert not Path("/tmp/criage-absolute-evil").exists()

    @pytest.mark.parametrize("entry_name", ["../../evil", "/tmp/criage-absolute-evil"])
    def test_zip_traversal_rejected(self, workspace, archive_manager, entry_name):
        """Test zip entries climbing out of the destination abort extraction"""
        archive = workspace / "evil.zip"
        with zipfile.ZipFile(archive, "w") as zf:
            zf.writestr(zipfile.ZipInfo(entry_name), b"evil")

        dest = workspace / "a" / "b" / "dest"
        with pytest.raises(PathTraversalError):
            archive_manager.extract_archive(archive, dest)

        assert not (workspace / "a" / "evil").exists()
        assert not Path("/tmp/criage-absolute-evil").exists()


class TestFormatDetection:
    """Test suffix-based format classification"""

    @pytest.mark.parametrize("filename,expected", [
        ("pkg-1.0.0.tar.zst", ArchiveFormat.TAR_ZST),
        ("pkg-1.0.0.tar.lz4", ArchiveFormat.TAR_LZ4),
        ("pkg-1.0.0.tar.xz", ArchiveFormat.TAR_XZ),
        ("pkg-1.0.0.tar.gz", ArchiveFormat.TAR_GZ),
        ("pkg-1.0.0.tgz", ArchiveFormat.TAR_GZ),
        ("pkg-1.0.0.zip", ArchiveFormat.ZIP),
    ])
    def test_known_suffixes(self, filename, expected):
        assert detect_format(filename) == expected

    def test_unknown_suffix_defaults_to_tar_zst(self):
        """Test unmatched extensions fall back to tar.zst"""
        assert detect_format("package.unknownext") == ArchiveFormat.TAR_ZST
        assert ArchiveManager.detect_format("package") == ArchiveFormat.TAR_ZST

    def test_strip_format_suffix(self):
        assert strip_format_suffix("tool-1.0-linux-amd64.tar.gz") == ("tool-1.0-linux-amd64", ArchiveFormat.TAR_GZ)

        with pytest.raises(UnsupportedFormatError):
            strip_format_suffix("tool.rar")

    def test_parse_rejects_unknown(self):
        with pytest.raises(UnsupportedFormatError):
            ArchiveFormat.parse("tar.bz2")


class TestCollectEntries:
    """Test the directory walk feeding archive creation"""

    def test_parents_before_children(self, workspace):
        source = _make_tree(workspace)
        names = [e.arcname for e in collect_entries(source)]

        assert names.index("lib") < names.index("lib/nested") < names.index("lib/nested/deep/data.txt")

    def test_include_outside_source_rejected(self, workspace):
        source = _make_tree(workspace)
        with pytest.raises(ValueError):
            collect_entries(source, include=["../outside"])

    def test_missing_literal_include(self, workspace):
        source = _make_tree(workspace)
        with pytest.raises(FileNotFoundError):
            collect_entries(source, include=["missing.txt"])
