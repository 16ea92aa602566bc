# Copyright (c) 2025 adcl.io
# All Rights Reserved.
#
# This software is proprietary and confidential. Unauthorized copying,
# distribution, or use of this software is strictly prohibited.

"""
API Tests for the Repository Server

Exercises every /api/v1 route through FastAPI's TestClient, including the
response envelope, download accounting and token-protected uploads.
"""

import hashlib
from contextlib import contextmanager

import pytest
from fastapi.testclient import TestClient

from criage.repository.config import ServerConfig
from criage.repository.server import create_app

from conftest import UPLOAD_TOKEN, publish_to_storage, refresh, write_project

AUTH = {"Authorization": f"Bearer {UPLOAD_TOKEN}"}


@pytest.fixture
def stored(workspace, archive_manager, storage_path, api_client):
    """Store archives in the repository and reindex"""
    def _store(name, version="1.0.0", **fields):
        project = write_project(workspace / "projects", name, version, **fields)
        path = publish_to_storage(archive_manager, storage_path, project)
        refresh(api_client)
        return path
    return _store


@contextmanager
def repository(workspace, **overrides):
    settings = dict(
        storage_path=str(workspace / "other-storage"),
        index_path=str(workspace / "other-index.json"),
        upload_token=UPLOAD_TOKEN,
        log_format="text",
        log_level="WARNING",
    )
    settings.update(overrides)
    with TestClient(create_app(ServerConfig(**settings))) as client:
        yield client


def _upload(client, filename, content=b"data", headers=AUTH, signature=None):
    files = {"package": (filename, content, "application/octet-stream")}
    if signature is not None:
        files["signature"] = (filename + ".asc", signature, "application/pgp-signature")
    return client.post("/api/v1/upload", files=files, headers=headers)


class TestRepositoryInfo:
    """Test repository info and statistics"""

    def test_info(self, api_client):
        response = api_client.get("/api/v1/")

        assert response.status_code == 200
        body = response.json()
        assert body["success"] is True
        assert body["data"]["name"] == "Criage Package Repository"
        assert body["data"]["total_packages"] == 0
        assert body["data"]["formats"] == ["tar.zst", "tar.lz4", "tar.xz", "tar.gz", "zip"]

    def test_stats(self, api_client, stored):
        stored("alpha", license="MIT", author="Ann")

        data = api_client.get("/api/v1/stats").json()["data"]

        assert data["packages_by_license"] == {"MIT": 1}
        assert data["packages_by_author"] == {"Ann": 1}
        assert data["popular_packages"] == ["alpha"]
        assert data["total_downloads"] == 0


class TestPackageQueries:
    """Test listing, lookup and search"""

    def test_pagination(self, api_client, stored):
        for name in ("a1", "a2", "a3"):
            stored(name)

        data = api_client.get("/api/v1/packages", params={"page": 2, "limit": 2}).json()["data"]

        assert [p["name"] for p in data["packages"]] == ["a3"]
        assert data["total"] == 3
        assert data["total_pages"] == 2

    @pytest.mark.parametrize("limit", [0, 101, -5])
    def test_out_of_range_limit_falls_back(self, api_client, limit):
        data = api_client.get("/api/v1/packages", params={"limit": limit}).json()["data"]
        assert data["limit"] == 20

    def test_non_numeric_page_is_bad_request(self, api_client):
        response = api_client.get("/api/v1/packages", params={"page": "abc"})

        assert response.status_code == 400
        assert response.json()["success"] is False

    def test_get_package_and_version(self, api_client, stored):
        stored("alpha", description="First")

        package = api_client.get("/api/v1/packages/alpha").json()["data"]
        version = api_client.get("/api/v1/packages/alpha/1.0.0").json()["data"]

        assert package["description"] == "First"
        assert package["latest_version"] == "1.0.0"
        assert version["version"] == "1.0.0"
        assert version["files"][0]["format"] == "tar.zst"

    @pytest.mark.parametrize("path", ["/api/v1/packages/ghost", "/api/v1/packages/ghost/1.0.0"])
    def test_unknown_package_envelope(self, api_client, path):
        response = api_client.get(path)

        assert response.status_code == 404
        body = response.json()
        assert body["success"] is False
        assert "ghost" in body["error"]

    def test_unknown_version(self, api_client, stored):
        stored("alpha")
        assert api_client.get("/api/v1/packages/alpha/9.9.9").status_code == 404

    def test_search(self, api_client, stored):
        stored("bar", description="contains foo")
        stored("foo-tools", keywords=["foo"])

        data = api_client.get("/api/v1/search", params={"q": "foo"}).json()["data"]

        assert data["query"] == "foo"
        assert data["total"] == 2
        assert [r["name"] for r in data["results"]] == ["foo-tools", "bar"]
        assert data["results"][0]["score"] == 13.0

    def test_search_requires_query(self, api_client):
        response = api_client.get("/api/v1/search")

        assert response.status_code == 400
        assert response.json()["success"] is False


class TestDownload:
    """Test archive and signature downloads"""

    def test_download_headers_and_counting(self, api_client, stored):
        path = stored("alpha")
        url = f"/api/v1/download/alpha/1.0.0/{path.name}"

        response = api_client.get(url)

        assert response.status_code == 200
        assert response.content == path.read_bytes()
        assert response.headers["X-Checksum"] == hashlib.sha256(path.read_bytes()).hexdigest()
        assert int(response.headers["Content-Length"]) == path.stat().st_size
        assert path.name in response.headers["Content-Disposition"]

        package = api_client.get("/api/v1/packages/alpha").json()["data"]
        assert package["downloads"] == 1
        assert package["versions"][0]["downloads"] == 1

    def test_unknown_file(self, api_client, stored):
        stored("alpha")
        response = api_client.get("/api/v1/download/alpha/1.0.0/alpha-1.0.0-plan9-mips.zip")

        assert response.status_code == 404
        assert response.json()["success"] is False

    def test_signature_download_not_counted(self, api_client, stored):
        path = stored("alpha")
        signature = path.with_name(path.name + ".asc")
        signature.write_text("-----BEGIN PGP SIGNATURE-----\n")

        response = api_client.get(f"/api/v1/download/alpha/1.0.0/{signature.name}")

        assert response.status_code == 200
        assert response.headers["content-type"].startswith("application/pgp-signature")
        assert response.text == "-----BEGIN PGP SIGNATURE-----\n"
        assert api_client.get("/api/v1/packages/alpha").json()["data"]["downloads"] == 0

    def test_missing_signature(self, api_client, stored):
        path = stored("alpha")
        response = api_client.get(f"/api/v1/download/alpha/1.0.0/{path.name}.asc")
        assert response.status_code == 404


class TestUpload:
    """Test token-protected uploads and refresh"""

    def test_upload_indexes_package(self, api_client, workspace, archive_manager, storage_path):
        project = write_project(workspace / "projects", "uploaded", description="Via HTTP")
        archive = publish_to_storage(archive_manager, workspace, project)

        response = _upload(api_client, archive.name, archive.read_bytes())

        assert response.status_code == 201
        body = response.json()
        assert body["message"] == "Package uploaded successfully"
        assert body["data"] == {"filename": archive.name, "size": archive.stat().st_size}
        assert (storage_path / archive.name).read_bytes() == archive.read_bytes()

        package = api_client.get("/api/v1/packages/uploaded").json()["data"]
        assert package["description"] == "Via HTTP"

    def test_upload_with_signature(self, api_client, storage_path):
        response = _upload(api_client, "tool-1.0.0-linux-amd64.zip", b"zipdata", signature=b"sig")

        assert response.status_code == 201
        assert (storage_path / "tool-1.0.0-linux-amd64.zip.asc").read_bytes() == b"sig"

    @pytest.mark.parametrize("headers", [{}, {"Authorization": "Bearer wrong"}, {"Authorization": UPLOAD_TOKEN}])
    def test_bad_token(self, api_client, storage_path, headers):
        response = _upload(api_client, "tool-1.0.0.zip", headers=headers)

        assert response.status_code == 401
        assert response.json()["success"] is False
        assert not (storage_path / "tool-1.0.0.zip").exists()

    def test_empty_token_rejects_everything(self, workspace):
        with repository(workspace, upload_token="") as client:
            response = _upload(client, "tool-1.0.0.zip", headers={"Authorization": "Bearer "})
        assert response.status_code == 401

    @pytest.mark.parametrize("filename", ["tool-1.0.0.rar", "tool-1.0.0.tar.bz2", ".hidden.zip"])
    def test_bad_filename(self, api_client, filename):
        response = _upload(api_client, filename)

        assert response.status_code == 400
        assert response.json()["success"] is False

    def test_path_in_filename_is_stripped(self, api_client, storage_path, workspace):
        response = _upload(api_client, "../../escape-1.0.0.zip")

        assert response.status_code == 201
        assert (storage_path / "escape-1.0.0.zip").exists()
        assert not (workspace.parent / "escape-1.0.0.zip").exists()

    def test_missing_file(self, api_client):
        response = api_client.post("/api/v1/upload", headers=AUTH)
        assert response.status_code == 400

    def test_oversize_rejected(self, workspace):
        with repository(workspace, max_file_size=10) as client:
            response = _upload(client, "big-1.0.0.zip", b"x" * 11)

        assert response.status_code == 400
        assert not (workspace / "other-storage" / "big-1.0.0.zip").exists()

    def test_oversized_reupload_keeps_published_archive(self, workspace, archive_manager):
        project = write_project(workspace / "projects", "kept")
        archive = publish_to_storage(archive_manager, workspace, project)
        original = archive.read_bytes()
        storage = workspace / "other-storage"

        with repository(workspace, max_file_size=len(original)) as client:
            assert _upload(client, archive.name, original).status_code == 201
            response = _upload(client, archive.name, b"x" * (len(original) + 10))
            download = client.get(f"/api/v1/download/kept/1.0.0/{archive.name}")

        assert response.status_code == 400
        assert (storage / archive.name).read_bytes() == original
        assert download.status_code == 200
        assert download.headers["X-Checksum"] == hashlib.sha256(download.content).hexdigest()
        # No staging files left behind
        assert [p.name for p in storage.iterdir()] == [archive.name]

    def test_same_size_reupload_recomputes_checksum(self, api_client, workspace, archive_manager):
        project = write_project(workspace / "projects", "swapped")
        archive = publish_to_storage(archive_manager, workspace, project)
        assert _upload(api_client, archive.name, archive.read_bytes()).status_code == 201
        replacement = b"\0" * archive.stat().st_size

        response = _upload(api_client, archive.name, replacement)
        download = api_client.get(f"/api/v1/download/swapped/1.0.0/{archive.name}")

        assert response.status_code == 201
        assert download.status_code == 200
        assert download.content == replacement
        assert download.headers["X-Checksum"] == hashlib.sha256(replacement).hexdigest()
        versions = api_client.get("/api/v1/packages/swapped").json()["data"]["versions"]
        assert len(versions[0]["files"]) == 1

    def test_reupload_without_signature_drops_stale_one(self, api_client, storage_path):
        assert _upload(api_client, "tool-1.0.0-linux-amd64.zip", b"v1", signature=b"sig").status_code == 201

        assert _upload(api_client, "tool-1.0.0-linux-amd64.zip", b"v2").status_code == 201

        assert (storage_path / "tool-1.0.0-linux-amd64.zip").read_bytes() == b"v2"
        assert not (storage_path / "tool-1.0.0-linux-amd64.zip.asc").exists()

    def test_disallowed_format(self, workspace):
        with repository(workspace, allowed_formats=["zip"]) as client:
            response = _upload(client, "tool-1.0.0.tar.gz")
        assert response.status_code == 400

    def test_refresh(self, api_client, workspace, archive_manager, storage_path):
        publish_to_storage(archive_manager, storage_path, write_project(workspace / "projects", "late"))

        assert api_client.post("/api/v1/refresh").status_code == 401
        data = refresh(api_client)

        assert data["total_packages"] == 1
        assert api_client.get("/api/v1/packages/late").status_code == 200
