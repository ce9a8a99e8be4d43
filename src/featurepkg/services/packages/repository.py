"""Repository client.

Talks to branch-partitioned package repositories:

    GET {base}/package/{branch}/{name}/info              -> manifest JSON
    GET {base}/package/{branch}/{name}/download/{version} -> zip archive
"""

import asyncio
import hashlib
import re
from collections.abc import Awaitable, Callable
from pathlib import Path

import httpx
from pydantic import ValidationError as PydanticValidationError

from featurepkg.exceptions import OperationalError, ValidationError, VersionNotFoundError
from featurepkg.logger import get_logger
from featurepkg.models.manifest import (
    DEFAULT_MAX_ALIAS_DEPTH,
    LATEST,
    PackageManifest,
    parse_version,
    resolve_alias,
)
from featurepkg.models.operation import ManifestCandidate
from featurepkg.services.packages.store import StateStore

logger = get_logger(__name__)

INFO_URL_PATTERN = re.compile(r"^(?P<base>.+)/package/(?P<branch>[^/]+)/(?P<name>[^/]+)/info/?$")

ProgressCallback = Callable[[int, int], Awaitable[None]]


def parse_info_url(url: str) -> tuple[str, str, str]:
    """
    Split an info URL into its parts.

    Returns:
        Tuple of (base_url, branch, package name)

    Raises:
        ValidationError: If the URL does not have the info URL shape
    """
    match = INFO_URL_PATTERN.match(url)
    if not match:
        raise ValidationError("repository.url.unrecognized", url=url)
    return match.group("base"), match.group("branch"), match.group("name")


def select_version(
    candidates: list[ManifestCandidate],
    version_query: str,
    max_alias_depth: int = DEFAULT_MAX_ALIAS_DEPTH,
) -> ManifestCandidate | None:
    """
    Pick the manifest to install ``version_query`` from.

    For ``"latest"`` every candidate's latest alias is resolved and the highest
    version wins; on ties the earlier candidate is kept. Candidates whose
    latest dangles, cycles or is not a semantic version are skipped. Any other
    query is matched literally against version keys and the first candidate
    offering it wins.
    """
    if version_query != LATEST:
        return next((c for c in candidates if version_query in c.manifest.versions), None)

    best: ManifestCandidate | None = None
    best_version = None
    for candidate in candidates:
        try:
            resolved = resolve_alias(candidate.manifest, LATEST, max_alias_depth)
            if resolved is None:
                continue
            version = parse_version(resolved)
        except ValidationError as e:
            logger.warning("Skipping manifest with unusable latest version", url=candidate.origin_url, error=str(e))
            continue
        if best_version is None or version > best_version:
            best, best_version = candidate, version
    return best


def sha256_file(path: Path) -> str:
    hasher = hashlib.sha256()
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(1024 * 1024), b""):
            hasher.update(chunk)
    return hasher.hexdigest()


class RepositoryClient:
    """Queries configured sources for manifests and downloads package archives."""

    def __init__(
        self,
        store: StateStore,
        staging_dir: Path,
        timeout: float | None = 60.0,
        verify_downloads: bool = True,
        max_alias_depth: int = DEFAULT_MAX_ALIAS_DEPTH,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        """
        Initialize the client.

        Args:
            store: State store providing the configured sources
            staging_dir: Directory downloaded archives are kept in
            timeout: Per-request timeout in seconds (None disables)
            verify_downloads: Check fresh downloads against the declared sha-256
            max_alias_depth: Alias hops allowed when resolving "latest"
            transport: Optional httpx transport (used by tests)
        """
        self.store = store
        self.staging_dir = staging_dir
        self.timeout = timeout
        self.verify_downloads = verify_downloads
        self.max_alias_depth = max_alias_depth
        self.transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            follow_redirects=True,
            timeout=self.timeout,
            transport=self.transport,
            headers={"User-Agent": "featurepkg/1.0"},
        )

    def info_urls(self, name: str) -> list[str]:
        urls = []
        for source in self.store.get_sources():
            base = source.url.rstrip("/")
            for branch in source.active_branches:
                urls.append(f"{base}/package/{branch}/{name}/info")
        return urls

    async def fetch_manifests(self, name: str) -> list[ManifestCandidate]:
        """
        Query every active branch of every source concurrently.

        Failed requests are logged and left out of the result; an empty list
        means no source answered with a usable manifest.
        """
        urls = self.info_urls(name)
        if not urls:
            logger.warning("No active repository branches configured")
            return []

        async with self._client() as client:
            results = await asyncio.gather(
                *(self._fetch_manifest(client, url) for url in urls),
                return_exceptions=True,
            )

        candidates: list[ManifestCandidate] = []
        for url, result in zip(urls, results):
            if isinstance(result, Exception):
                logger.warning(
                    "Error when processing request to repository",
                    url=url,
                    error_type=type(result).__name__,
                    error=str(result),
                )
                continue
            candidates.append(result)

        logger.debug(f"Received {len(candidates)} manifest(s) for {name} from {len(urls)} location(s)")
        return candidates

    async def _fetch_manifest(self, client: httpx.AsyncClient, url: str) -> ManifestCandidate:
        response = await client.get(url)
        response.raise_for_status()
        try:
            manifest = PackageManifest(**response.json())
        except PydanticValidationError as e:
            raise ValueError(f"Invalid manifest: {e}") from e
        return ManifestCandidate(manifest=manifest, origin_url=url)

    async def find_version(self, name: str, version: str) -> ManifestCandidate:
        """
        Fetch manifests for ``name`` and select the one offering ``version``.

        Raises:
            VersionNotFoundError: If no source offers the version
        """
        candidates = await self.fetch_manifests(name)
        selected = select_version(candidates, version, self.max_alias_depth)
        if selected is None:
            raise VersionNotFoundError(name, version)
        return selected

    def archive_path(self, name: str, version: str) -> Path:
        return self.staging_dir / f"{name}-{version}.zip"

    async def fetch_archive(
        self,
        name: str,
        manifest: PackageManifest,
        resolved_version: str,
        origin_url: str,
        progress_callback: ProgressCallback | None = None,
    ) -> Path:
        """
        Make the archive of ``name`` at ``resolved_version`` available locally.

        A staged archive whose sha-256 matches the manifest is reused without a
        request; otherwise it is deleted and downloaded again.

        Args:
            name: Package name
            manifest: Manifest the version was selected from
            resolved_version: Concrete version key
            origin_url: Info URL the manifest came from
            progress_callback: Awaited with (downloaded_bytes, total_bytes)

        Returns:
            Path of the staged archive

        Raises:
            OperationalError: If the download fails or does not match the declared hash
        """
        base_url, branch, _ = parse_info_url(origin_url)
        url = f"{base_url}/package/{branch}/{name}/download/{resolved_version}"
        target = self.archive_path(name, resolved_version)

        entry = manifest.get_entry(resolved_version)
        expected = (entry.sha256 if entry else "").lower()

        if target.exists():
            actual = await asyncio.to_thread(sha256_file, target)
            if expected and actual == expected:
                logger.info(f"Reusing staged archive {target.name}")
                return target
            logger.info(f"Staged archive {target.name} is stale, downloading again")
            target.unlink()

        self.staging_dir.mkdir(parents=True, exist_ok=True)
        logger.info(f"Downloading {name} {resolved_version} from {url}")

        hasher = hashlib.sha256()
        try:
            async with self._client() as client:
                async with client.stream("GET", url) as response:
                    response.raise_for_status()
                    total_size = int(response.headers.get("Content-Length", 0))
                    downloaded_size = 0

                    with open(target, "wb") as out_file:
                        async for chunk in response.aiter_bytes(chunk_size=8192):
                            out_file.write(chunk)
                            hasher.update(chunk)
                            downloaded_size += len(chunk)
                            if progress_callback:
                                await progress_callback(downloaded_size, total_size)
        except httpx.HTTPError as e:
            target.unlink(missing_ok=True)
            raise OperationalError(
                "repository.download.failed", name=name, version=resolved_version, url=url, error=str(e)
            ) from e

        actual = hasher.hexdigest()
        if self.verify_downloads and expected and actual != expected:
            target.unlink(missing_ok=True)
            raise OperationalError(
                "repository.download.hash_mismatch",
                name=name,
                version=resolved_version,
                actual=actual,
                expected=expected,
            )

        return target
