# ABOUTME: Manifest sources that fetch a versioned snapshot of a repository file tree
# ABOUTME: In-memory, local working tree and HTTP archive implementations plus YAML parsing

"""
Manifest Source boundary.

    fetch(repo_url, revision, path) -> {repo-relative path: raw document text}

Failures are ``SourceUnavailable`` (unreachable, timed out, server error) or
``RevisionNotFound``. Only files ending in ``.yaml``, ``.yml`` or ``.json``
under ``path`` are returned, keyed by their path relative to the repository
root so overlay references such as ``../base`` can be resolved against them.
"""

from __future__ import annotations

import io
import posixpath
import tarfile
from pathlib import Path
from typing import Any, Protocol
from urllib.parse import urlparse

import httpx
import structlog
import yaml
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from gitops_reconciler.errors import ManifestParseError, RevisionNotFound, SourceUnavailable

logger = structlog.get_logger(__name__)

MANIFEST_SUFFIXES = (".yaml", ".yml", ".json")

RawDocuments = dict[str, str]


class ManifestSource(Protocol):
    async def fetch(self, repo_url: str, revision: str, path: str) -> RawDocuments: ...


def normalize_path(path: str) -> str:
    """Repo-relative POSIX path without leading ``./`` or ``/``; the root is ``""``."""
    cleaned = posixpath.normpath(path.strip("/") or ".")
    if cleaned.startswith(".."):
        raise ManifestParseError(f"Path '{path}' escapes the repository root")
    return "" if cleaned == "." else cleaned


def _under(file_path: str, path: str) -> bool:
    return not path or file_path == path or file_path.startswith(path + "/")


def _is_manifest(file_path: str) -> bool:
    return file_path.endswith(MANIFEST_SUFFIXES)


def parse_documents(raw: RawDocuments) -> list[dict[str, Any]]:
    """
    Parse raw files into Kubernetes objects, in sorted path order.

    Empty documents are skipped and ``kind: List`` documents are flattened.

    Raises:
        ManifestParseError: invalid YAML or a document that is not a mapping.
    """
    documents: list[dict[str, Any]] = []
    for file_path in sorted(raw):
        try:
            loaded = list(yaml.safe_load_all(raw[file_path]))
        except yaml.YAMLError as e:
            raise ManifestParseError(f"Invalid YAML: {e}", resource=file_path) from e
        for doc in loaded:
            if doc is None:
                continue
            if not isinstance(doc, dict):
                raise ManifestParseError("Document is not a mapping", resource=file_path)
            if doc.get("kind") == "List":
                documents.extend(item for item in doc.get("items") or [] if item)
            else:
                documents.append(doc)
    return documents


# =============================================================================
# IN-MEMORY SOURCE
# =============================================================================


class InMemorySource:
    """
    Repositories held in memory: ``{repo_url: {revision: {path: text}}}``.

    ``HEAD`` resolves to whatever revision was published last. Used by tests
    and by embedders that already hold the manifests.
    """

    def __init__(self) -> None:
        self._repos: dict[str, dict[str, RawDocuments]] = {}
        self._heads: dict[str, str] = {}
        self.unavailable: set[str] = set()
        self.fetches = 0

    def publish(self, repo_url: str, revision: str, files: RawDocuments) -> None:
        """Store a complete snapshot of the tree at ``revision``."""
        self._repos.setdefault(repo_url, {})[revision] = dict(files)
        self._heads[repo_url] = revision

    async def fetch(self, repo_url: str, revision: str, path: str) -> RawDocuments:
        self.fetches += 1
        if repo_url in self.unavailable or repo_url not in self._repos:
            raise SourceUnavailable(f"Repository {repo_url} is unavailable")
        if revision in ("", "HEAD"):
            revision = self._heads[repo_url]
        snapshot = self._repos[repo_url].get(revision)
        if snapshot is None:
            raise RevisionNotFound(f"Revision {revision} not found in {repo_url}")
        prefix = normalize_path(path)
        return {
            normalize_path(file_path): text
            for file_path, text in snapshot.items()
            if _is_manifest(file_path) and _under(normalize_path(file_path), prefix)
        }


# =============================================================================
# LOCAL WORKING TREE
# =============================================================================


class LocalSource:
    """
    ``file://`` repositories read from the working tree.

    Only the current tree exists, so any revision other than ``HEAD``, the
    empty string, or the directory's own name is ``RevisionNotFound``.
    """

    async def fetch(self, repo_url: str, revision: str, path: str) -> RawDocuments:
        root = Path(urlparse(repo_url).path)
        if not root.is_dir():
            raise SourceUnavailable(f"Repository {repo_url} is not a directory")
        if revision not in ("", "HEAD", root.name):
            raise RevisionNotFound(f"Revision {revision} not available for local repository {repo_url}")

        prefix = normalize_path(path)
        base = root / prefix if prefix else root
        if not base.exists():
            return {}
        files: RawDocuments = {}
        candidates = [base] if base.is_file() else sorted(base.rglob("*"))
        for candidate in candidates:
            relative = candidate.relative_to(root).as_posix()
            if candidate.is_file() and _is_manifest(relative):
                files[relative] = candidate.read_text(encoding="utf-8")
        return files


# =============================================================================
# HTTP ARCHIVE SOURCE
# =============================================================================


class ArchiveSource:
    """
    Fetches ``{repo_url}/archive/{revision}.tar.gz`` over HTTP.

    The archive layout used by the common Git hosts has one top-level
    directory (``<repo>-<revision>/``); it is stripped so keys are
    repo-relative.

    TIMEOUTS:
    ---------
    Timeouts are retried by tenacity (3 attempts, exponential wait). Anything
    still failing becomes SourceUnavailable, which the reconciliation loop
    retries on its own, longer backoff.
    """

    def __init__(self, token: str | None = None, timeout: float = 30.0) -> None:
        self._token = token
        self._timeout = timeout
        self._client: httpx.AsyncClient | None = None

    async def __aenter__(self) -> ArchiveSource:
        headers = {"Authorization": f"Bearer {self._token}"} if self._token else {}
        self._client = httpx.AsyncClient(headers=headers, timeout=self._timeout, follow_redirects=True)
        return self

    async def __aexit__(self, *args: object) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None

    @retry(
        retry=retry_if_exception_type(httpx.TimeoutException),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=10),
        reraise=True,
    )
    async def _download(self, url: str) -> httpx.Response:
        if not self._client:
            raise RuntimeError("Source not initialized. Use 'async with' context manager.")
        logger.debug("Downloading source archive", url=url)
        return await self._client.get(url)

    async def fetch(self, repo_url: str, revision: str, path: str) -> RawDocuments:
        url = f"{repo_url.removesuffix('.git').rstrip('/')}/archive/{revision}.tar.gz"
        try:
            response = await self._download(url)
        except httpx.HTTPError as e:
            raise SourceUnavailable(f"Fetching {url} failed: {e!r}") from e

        if response.status_code == 404:
            raise RevisionNotFound(f"Revision {revision} not found in {repo_url}")
        if response.status_code >= 400:
            raise SourceUnavailable(f"Fetching {url} returned HTTP {response.status_code}")

        return self._extract(response.content, normalize_path(path), url)

    @staticmethod
    def _extract(content: bytes, prefix: str, url: str) -> RawDocuments:
        files: RawDocuments = {}
        try:
            with tarfile.open(fileobj=io.BytesIO(content), mode="r:gz") as archive:
                for member in archive.getmembers():
                    if not member.isfile():
                        continue
                    _, _, relative = member.name.partition("/")
                    if not relative or not _is_manifest(relative) or not _under(relative, prefix):
                        continue
                    extracted = archive.extractfile(member)
                    if extracted is not None:
                        files[relative] = extracted.read().decode("utf-8")
        except (tarfile.TarError, OSError, UnicodeDecodeError) as e:
            raise SourceUnavailable(f"Archive from {url} is unreadable: {e}") from e
        return files


# =============================================================================
# ROUTER
# =============================================================================


class SourceRouter:
    """Dispatch by URL scheme: ``file://`` to the local source, everything else to HTTP."""

    def __init__(self, local: ManifestSource, remote: ManifestSource) -> None:
        self._local = local
        self._remote = remote

    async def fetch(self, repo_url: str, revision: str, path: str) -> RawDocuments:
        if urlparse(repo_url).scheme == "file":
            return await self._local.fetch(repo_url, revision, path)
        return await self._remote.fetch(repo_url, revision, path)
