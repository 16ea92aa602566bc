# Copyright (c) 2025 adcl.io
# All Rights Reserved.
#
# This software is proprietary and confidential. Unauthorized copying,
# distribution, or use of this software is strictly prohibited.

"""
Repository API Client

Client for criage repositories: package lookup across repositories in
priority order, downloads with checksum verification, search fan-out and
uploads.
"""

import hashlib
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional, Union
from urllib.parse import quote

import httpx

from criage.core.config import RepositoryConfig
from criage.core.errors import CriageError, IntegrityError, NetworkError, NotFoundError
from criage.models import SearchResult

logger = logging.getLogger(__name__)

PREFERRED_FORMATS = ["tar.zst", "tar.lz4", "tar.xz", "tar.gz", "zip"]


@dataclass
class ResolvedPackage:
    """A concrete archive located in one repository"""
    repository: RepositoryConfig
    name: str
    version: str
    filename: str
    download_url: str
    size: int = 0
    checksum: Optional[str] = None
    format: Optional[str] = None


def sha256_file(path: Union[str, Path]) -> str:
    digest = hashlib.sha256()
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(1024 * 1024), b""):
            digest.update(chunk)
    return digest.hexdigest()


class RepositoryClient:
    """
    Client for repository operations.

    Handles:
    - Package lookup (highest priority repository that has it wins)
    - Archive download and checksum verification
    - Search across all enabled repositories
    - Package upload
    """

    def __init__(
        self,
        repositories: List[RepositoryConfig],
        timeout: float = 60.0,
        retries: int = 0,
        http_client: Optional[httpx.Client] = None
    ):
        """
        Initialize repository client.

        Args:
            repositories: Configured repositories
            timeout: Overall timeout per request in seconds
            retries: Connection attempts retried before a request fails
            http_client: Pre-built client (tests pass the FastAPI TestClient)
        """
        self.repositories = sorted(repositories, key=lambda r: r.priority, reverse=True)
        self._owns_client = http_client is None
        self.client = http_client or httpx.Client(
            timeout=timeout,
            follow_redirects=True,
            transport=httpx.HTTPTransport(retries=retries),
        )

    def close(self) -> None:
        if self._owns_client:
            self.client.close()

    # -- HTTP helpers --

    @staticmethod
    def _url(repository: RepositoryConfig, path: str) -> str:
        return f"{repository.url.rstrip('/')}/{path.lstrip('/')}"

    @staticmethod
    def _headers(repository: RepositoryConfig) -> Dict[str, str]:
        if repository.auth_token:
            return {"Authorization": f"Bearer {repository.auth_token}"}
        return {}

    def _get_json(
        self,
        repository: RepositoryConfig,
        path: str,
        params: Optional[Dict[str, Any]] = None
    ) -> Any:
        """GET a repository endpoint and unwrap the response envelope."""
        url = self._url(repository, path)
        try:
            response = self.client.get(url, params=params, headers=self._headers(repository))
        except httpx.HTTPError as e:
            raise NetworkError(f"Failed to reach repository {repository.name}: {e}", url=url)

        if response.status_code == 404:
            raise NotFoundError("Resource", url)
        if response.status_code != 200:
            raise NetworkError(
                f"Repository {repository.name} returned HTTP {response.status_code}",
                url=url
            )

        try:
            body = response.json()
        except ValueError:
            raise NetworkError(f"Repository {repository.name} returned invalid JSON", url=url)

        if isinstance(body, dict) and "success" in body:
            if not body["success"]:
                raise NetworkError(body.get("error") or "request failed", url=url)
            return body.get("data")
        return body

    # -- Lookup --

    def find_package(
        self,
        name: str,
        version: Optional[str],
        os_name: str,
        arch: str
    ) -> ResolvedPackage:
        """
        Locate a package archive for a platform.

        Repositories are tried in descending priority; the first that has a
        matching archive wins. Results are never merged across repositories.

        Args:
            name: Package name
            version: Exact version, or None for the repository's latest
            os_name: Target OS (e.g. linux)
            arch: Target architecture (e.g. amd64)

        Raises:
            NotFoundError: If no enabled repository has a matching archive
        """
        for repository in self.repositories:
            if not repository.enabled:
                continue
            try:
                return self._find_in_repository(repository, name, version, os_name, arch)
            except (NotFoundError, NetworkError) as e:
                logger.debug(f"{name} not available from {repository.name}: {e.message}")

        identifier = f"{name}@{version}" if version else name
        raise NotFoundError("Package", identifier)

    def _find_in_repository(
        self,
        repository: RepositoryConfig,
        name: str,
        version: Optional[str],
        os_name: str,
        arch: str
    ) -> ResolvedPackage:
        entry = self._get_json(repository, f"packages/{quote(name, safe='')}")
        if not isinstance(entry, dict):
            raise NetworkError(f"Unexpected package payload from {repository.name}")

        target_version = version or entry.get("latest_version")
        version_entry = next(
            (v for v in entry.get("versions") or [] if v.get("version") == target_version),
            None
        )
        if version_entry is None:
            raise NotFoundError("Version", f"{name}@{target_version}")

        file_entry = self._select_file(version_entry.get("files") or [], os_name, arch)
        if file_entry is None:
            raise NotFoundError("Archive", f"{name}@{target_version} for {os_name}/{arch}")

        filename = file_entry["filename"]
        download_url = self._url(
            repository,
            f"download/{quote(name, safe='')}/{quote(target_version, safe='')}/{quote(filename, safe='')}"
        )
        return ResolvedPackage(
            repository=repository,
            name=name,
            version=target_version,
            filename=filename,
            download_url=download_url,
            size=file_entry.get("size", 0),
            checksum=file_entry.get("checksum"),
            format=file_entry.get("format"),
        )

    @staticmethod
    def _select_file(files: List[Dict[str, Any]], os_name: str, arch: str) -> Optional[Dict[str, Any]]:
        candidates = [f for f in files if f.get("os") == os_name and f.get("arch") == arch]
        if not candidates:
            return None

        def rank(file_entry: Dict[str, Any]) -> int:
            fmt = file_entry.get("format")
            return PREFERRED_FORMATS.index(fmt) if fmt in PREFERRED_FORMATS else len(PREFERRED_FORMATS)

        return min(candidates, key=rank)

    # -- Transfer --

    def download(
        self,
        package: ResolvedPackage,
        dest_path: Union[str, Path],
        verify: bool = True
    ) -> Path:
        """
        Download an archive to dest_path.

        The body is written to a temporary file and moved into place only
        after the checksum matches (when verify is set and a checksum is known).

        Raises:
            NetworkError: Transfer failed or non-200 response
            IntegrityError: Checksum mismatch
        """
        dest_path = Path(dest_path)
        dest_path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = dest_path.with_name(dest_path.name + ".part")
        digest = hashlib.sha256()

        logger.info(f"Downloading {package.name}@{package.version} from {package.download_url}")
        try:
            with self.client.stream(
                "GET", package.download_url, headers=self._headers(package.repository)
            ) as response:
                if response.status_code != 200:
                    raise NetworkError(
                        f"Failed to download package: HTTP {response.status_code}",
                        url=package.download_url
                    )
                header_checksum = response.headers.get("X-Checksum")
                with open(tmp_path, "wb") as f:
                    for chunk in response.iter_bytes():
                        f.write(chunk)
                        digest.update(chunk)
        except httpx.HTTPError as e:
            tmp_path.unlink(missing_ok=True)
            raise NetworkError(f"Failed to download package: {e}", url=package.download_url)
        except CriageError:
            tmp_path.unlink(missing_ok=True)
            raise

        expected = package.checksum or header_checksum
        actual = digest.hexdigest()
        if verify and expected and actual != expected:
            tmp_path.unlink(missing_ok=True)
            raise IntegrityError(
                f"Checksum mismatch for {package.filename}: expected {expected}, got {actual}",
                path=str(dest_path)
            )

        os.replace(tmp_path, dest_path)
        return dest_path

    def fetch_signature(self, package: ResolvedPackage, dest_path: Union[str, Path]) -> Path:
        """
        Download the detached signature published next to an archive.

        Raises:
            NotFoundError: The repository has no signature for the archive
            NetworkError: Transfer failed
        """
        url = package.download_url + ".asc"
        try:
            response = self.client.get(url, headers=self._headers(package.repository))
        except httpx.HTTPError as e:
            raise NetworkError(f"Failed to download signature: {e}", url=url)

        if response.status_code == 404:
            raise NotFoundError("Signature", package.filename)
        if response.status_code != 200:
            raise NetworkError(f"Failed to download signature: HTTP {response.status_code}", url=url)

        dest_path = Path(dest_path)
        dest_path.write_bytes(response.content)
        return dest_path

    def search(self, query: str) -> List[SearchResult]:
        """
        Search every enabled repository.

        A failing repository is logged and left out of the result.
        Results are ordered by the score each repository assigned.
        """
        results: List[SearchResult] = []
        for repository in self.repositories:
            if not repository.enabled:
                continue
            try:
                data = self._get_json(repository, "search", params={"q": query})
                hits = data.get("results", []) if isinstance(data, dict) else (data or [])
                for hit in hits:
                    hit = dict(hit, repository=repository.name)
                    results.append(SearchResult.model_validate(hit))
            except (CriageError, ValueError) as e:
                logger.warning(f"Failed to search repository {repository.name}: {e}")

        results.sort(key=lambda r: r.score, reverse=True)
        return results

    def upload(
        self,
        registry_url: str,
        token: Optional[str],
        archive_path: Union[str, Path],
        name: str,
        version: str,
        signature_path: Optional[Union[str, Path]] = None
    ) -> Dict[str, Any]:
        """
        Upload an archive (and optional detached signature).

        Raises:
            NetworkError: Transfer failed or the repository rejected the upload
        """
        archive_path = Path(archive_path)
        url = f"{registry_url.rstrip('/')}/upload"
        headers = {"X-Package-Name": name, "X-Package-Version": version}
        if token:
            headers["Authorization"] = f"Bearer {token}"

        handles = []
        try:
            archive_handle = open(archive_path, "rb")
            handles.append(archive_handle)
            files = {"package": (archive_path.name, archive_handle, "application/octet-stream")}
            if signature_path:
                signature_path = Path(signature_path)
                signature_handle = open(signature_path, "rb")
                handles.append(signature_handle)
                files["signature"] = (signature_path.name, signature_handle, "application/pgp-signature")

            response = self.client.post(url, files=files, headers=headers)
        except httpx.HTTPError as e:
            raise NetworkError(f"Failed to upload package: {e}", url=url)
        finally:
            for handle in handles:
                handle.close()

        if response.status_code not in (200, 201):
            try:
                reason = response.json().get("error") or response.text
            except ValueError:
                reason = response.text
            raise NetworkError(
                f"Upload failed: HTTP {response.status_code}: {reason}",
                url=url,
                details={"status_code": response.status_code}
            )

        body = response.json()
        return body.get("data") or {}
