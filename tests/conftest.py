import hashlib
import io
import re
import zipfile
from pathlib import Path
from typing import Any

import httpx
import pytest

from featurepkg.models.operation import NodeDependency
from featurepkg.models.state import RepositorySource
from featurepkg.services.packages import (
    PackageInstaller,
    RepositoryClient,
    ScriptStore,
    StateStore,
)

REPO_A = "https://repo-a.test/"
REPO_B = "https://repo-b.test/"

_ROUTE = re.compile(r"^(?P<base>.+)/package/(?P<branch>[^/]+)/(?P<name>[^/]+)/(?P<kind>info|download)(?:/(?P<version>.+))?$")


def make_zip(files: dict[str, bytes]) -> bytes:
    bio = io.BytesIO()
    with zipfile.ZipFile(bio, "w") as zf:
        for name, content in files.items():
            zf.writestr(name, content)
    return bio.getvalue()


def sha256(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def version_entry(
    archive: bytes | None = None,
    dependencies: dict[str, str] | None = None,
    node_dependencies: dict[str, str] | None = None,
    files: dict[str, str] | None = None,
) -> dict[str, Any]:
    """Raw manifest version entry; ``files`` maps path -> uninstall action."""
    return {
        "type": "version",
        "sha-256": sha256(archive) if archive is not None else "",
        "dependencies": dependencies or {},
        "nodeDependencies": node_dependencies or {},
        "files": {path: {"hashsum": "", "uninstall-action": action} for path, action in (files or {}).items()},
    }


def alias(target: str) -> dict[str, str]:
    return {"type": "alias", "alias": target}


class FakeRepository:
    """In-memory package repository answering the info/download protocol."""

    def __init__(self) -> None:
        self.manifests: dict[tuple[str, str, str], dict[str, Any]] = {}
        self.archives: dict[tuple[str, str, str, str], bytes] = {}
        self.failing: set[str] = set()
        self.requests: list[str] = []

    def publish(
        self,
        name: str,
        manifest: dict[str, Any],
        archives: dict[str, bytes] | None = None,
        base: str = REPO_A,
        branch: str = "general",
    ) -> None:
        base = base.rstrip("/")
        self.manifests[(base, branch, name)] = manifest
        for version, data in (archives or {}).items():
            self.archives[(base, branch, name, version)] = data

    def downloads(self) -> list[str]:
        return [url for url in self.requests if "/download/" in url]

    def handler(self, request: httpx.Request) -> httpx.Response:
        url = str(request.url)
        self.requests.append(url)
        if url in self.failing:
            return httpx.Response(500)

        match = _ROUTE.match(url)
        if not match:
            return httpx.Response(404)
        base, branch, name = match.group("base"), match.group("branch"), match.group("name")

        if match.group("kind") == "info":
            manifest = self.manifests.get((base, branch, name))
            return httpx.Response(200, json=manifest) if manifest is not None else httpx.Response(404)

        data = self.archives.get((base, branch, name, match.group("version")))
        if data is None:
            return httpx.Response(404)
        return httpx.Response(200, content=data)


class FakeNode:
    """Records npm batches instead of running npm."""

    def __init__(self) -> None:
        self.installed: list[list[NodeDependency]] = []
        self.uninstalled: list[list[NodeDependency]] = []

    async def install(self, packages: list[NodeDependency]) -> None:
        self.installed.append(list(packages))

    async def uninstall(self, packages: list[NodeDependency]) -> None:
        self.uninstalled.append(list(packages))


@pytest.fixture
def repo() -> FakeRepository:
    return FakeRepository()


@pytest.fixture
def store(tmp_path: Path) -> StateStore:
    s = StateStore(tmp_path / "data")
    s.initialize([RepositorySource(url=REPO_A, branches=["general", "experimental"], active_branches=["general"])])
    return s


@pytest.fixture
def repository(store: StateStore, repo: FakeRepository, tmp_path: Path) -> RepositoryClient:
    return RepositoryClient(store, tmp_path / "staging", transport=httpx.MockTransport(repo.handler))


@pytest.fixture
def node() -> FakeNode:
    return FakeNode()


@pytest.fixture
def install_root(tmp_path: Path) -> Path:
    return tmp_path / "root"


@pytest.fixture
def installer(
    store: StateStore, repository: RepositoryClient, node: FakeNode, install_root: Path, tmp_path: Path
) -> PackageInstaller:
    return PackageInstaller(
        store=store,
        repository=repository,
        scripts=ScriptStore(tmp_path / "scripts", cwd=install_root),
        node=node,  # type: ignore[arg-type]
        install_root=install_root,
    )
