"""Package install/remove engine.

Per-package state machine persisted in state.json (no entry = not installed):

    (absent) -> downloading -> installing -> installed

A failure while downloading or installing restores the entry recorded before
the operation started. Every public operation runs under the store lock and
releases it on every exit path.
"""

import asyncio
import re
import shutil
import tempfile
import zipfile
from pathlib import Path, PurePosixPath

from featurepkg.exceptions import (
    AlreadyUpToDateError,
    DependencyVersionNotFoundError,
    OperationalError,
    ResourceNotFoundError,
    SystemPackageError,
    VersionNotFoundError,
)
from featurepkg.logger import get_logger
from featurepkg.models.manifest import (
    DEFAULT_MAX_ALIAS_DEPTH,
    LATEST,
    PackageManifest,
    VersionEntry,
    parse_version,
    resolve_alias,
    versions_equal,
)
from featurepkg.models.operation import InstallResult, NodeDependency, RemoveResult
from featurepkg.models.state import (
    STATUS_DOWNLOADING,
    STATUS_INSTALLED,
    STATUS_INSTALLING,
    PackageState,
)
from featurepkg.services.packages.node import NodePackageManager
from featurepkg.services.packages.repository import ProgressCallback, RepositoryClient
from featurepkg.services.packages.scripts import ScriptKind, ScriptStore
from featurepkg.services.packages.store import StateStore

logger = get_logger(__name__)

SCRIPTS_PREFIX = "__scripts/"
HOOK_ENTRY_PATTERN = re.compile(r"^__scripts/(?P<kind>install|uninstall)\.[^/]+$")
HOOK_KINDS: tuple[ScriptKind, ...] = ("install", "uninstall")


class PackageInstaller:
    """Installs and removes feature packages."""

    def __init__(
        self,
        store: StateStore,
        repository: RepositoryClient,
        scripts: ScriptStore,
        node: NodePackageManager,
        install_root: Path,
        max_alias_depth: int = DEFAULT_MAX_ALIAS_DEPTH,
        protect_system_packages: bool = True,
        progress_callback: ProgressCallback | None = None,
    ) -> None:
        """
        Initialize the installer.

        Args:
            store: State store (documents and lock)
            repository: Repository client
            scripts: Lifecycle hook store
            node: npm delegate for Node dependencies
            install_root: Directory package archives are extracted into
            max_alias_depth: Alias hops allowed when resolving versions
            protect_system_packages: Refuse to remove packages flagged as system
            progress_callback: Receives archive download progress
        """
        self.store = store
        self.repository = repository
        self.scripts = scripts
        self.node = node
        self.install_root = install_root
        self.max_alias_depth = max_alias_depth
        self.protect_system_packages = protect_system_packages
        self.progress_callback = progress_callback or self._log_progress

        # Bookkeeping for one top-level install walk
        self._installed_in_walk: set[str] = set()
        self._in_progress: set[str] = set()

    # ------------------------------------------------------------------
    # Public operations
    # ------------------------------------------------------------------

    async def install(self, name: str, version: str = LATEST, force_chain: bool = False) -> InstallResult:
        """
        Install ``name`` at ``version`` together with its dependencies.

        Failures are not raised: persisted state is reverted and the result has
        outcome ``reverted``. Only LockHeldError propagates, before anything is
        touched.

        Args:
            name: Package name
            version: Version key or alias (default "latest")
            force_chain: Walk every intermediate version even for a literal version

        Returns:
            InstallResult describing what happened

        Raises:
            LockHeldError: If another context holds the store lock
        """
        self.store.acquire_lock()
        self._installed_in_walk = set()
        self._in_progress = set()
        try:
            return await self._install(name, version, force_chain)
        except AlreadyUpToDateError as e:
            logger.info(str(e))
            return InstallResult(name=name, outcome="already_up_to_date", version=e.version)
        except Exception as e:
            logger.error(f"Installation of {name} failed: {e}")
            return InstallResult(name=name, outcome="reverted", error=str(e))
        finally:
            self._installed_in_walk = set()
            self._in_progress = set()
            self.store.release_lock()

    async def remove(self, name: str) -> RemoveResult:
        """
        Remove an installed package.

        Unlike install(), failures are raised to the caller after the lock is
        released.

        Raises:
            LockHeldError: If another context holds the store lock
            SystemPackageError: If the package is a protected system package
        """
        self.store.acquire_lock()
        try:
            state = self.store.get_states().get(name)
            if state is None or state.status != STATUS_INSTALLED:
                logger.info(f"Package {name} not installed")
                return RemoveResult(name=name, outcome="not_installed")

            manifest = self.store.get_metadata().get(name)
            if manifest is None:
                manifest = (await self.repository.find_version(name, state.version)).manifest

            if manifest.is_system:
                if self.protect_system_packages:
                    raise SystemPackageError(name)
                logger.warning(f"System package {name} is being removed")

            resolved = resolve_alias(manifest, state.version, self.max_alias_depth)
            entry = manifest.get_entry(resolved) if resolved else None
            if entry is None:
                raise ResourceNotFoundError("remove.version.missing", name=name, version=state.version)

            if self.scripts.has_script(name, "uninstall"):
                logger.info(f"Running uninstall script of {name}")
                await self.scripts.run_script(name, "uninstall")

            logger.info(f"Removing package {name}...")
            await asyncio.to_thread(self._remove_files, entry)
            await self._remove_node_dependencies(name, entry)
            for kind in HOOK_KINDS:
                self.scripts.remove_script(name, kind)

            self.store.set_package_state(name, None)
            self.store.set_package_metadata(name, None)

            logger.info(f"Package {name} removed.")
            return RemoveResult(name=name, outcome="removed", version=resolved)
        finally:
            self.store.release_lock()

    async def _remove_node_dependencies(self, name: str, entry: VersionEntry) -> None:
        """Uninstall npm packages of ``entry`` that no other installed package declares."""
        still_needed: set[str] = set()
        metadata = self.store.get_metadata()
        for other, state in self.store.get_states().items():
            manifest = metadata.get(other)
            if other == name or manifest is None:
                continue
            resolved = resolve_alias(manifest, state.version, self.max_alias_depth)
            other_entry = manifest.get_entry(resolved) if resolved else None
            if other_entry is not None:
                still_needed.update(other_entry.node_dependencies)

        unused = [
            NodeDependency(name=n, version=v) for n, v in entry.node_dependencies.items() if n not in still_needed
        ]
        if unused:
            await self.node.uninstall(unused)

    def list_installed(self) -> list[str]:
        """Names of packages whose status is installed."""
        return [name for name, state in self.store.get_states().items() if state.status == STATUS_INSTALLED]

    # ------------------------------------------------------------------
    # Install walk
    # ------------------------------------------------------------------

    async def _install(self, name: str, version: str, force_chain: bool) -> InstallResult:
        cached_manifest = self.store.get_metadata().get(name)
        state = self.store.get_states().get(name)

        candidate = await self.repository.find_version(name, version)
        manifest = candidate.manifest

        resolved_required = resolve_alias(manifest, version, self.max_alias_depth)
        if resolved_required is None:
            # The key exists but its alias chain dangles
            raise VersionNotFoundError(name, version)

        resolved_current = None
        if state is not None:
            previous = cached_manifest if cached_manifest is not None else manifest
            resolved_current = resolve_alias(previous, state.version, self.max_alias_depth)

        if manifest.is_chain_update and (version == LATEST or force_chain):
            next_version = self._next_chain_version(manifest, resolved_current, resolved_required)
            if next_version != resolved_current:
                logger.info(f"Chain update of {name}: {resolved_current or 'none'} -> {next_version}")
                step = await self._install(name, next_version, False)
                try:
                    return await self._install(name, LATEST, force_chain)
                except AlreadyUpToDateError:
                    return step

        # Cache stays fresh even when nothing else happens below
        self.store.set_package_metadata(name, manifest)

        if (
            state is not None
            and resolved_current is not None
            and version == LATEST
            and state.status == STATUS_INSTALLED
            and versions_equal(resolved_current, resolved_required)
        ):
            raise AlreadyUpToDateError(name, resolved_current)

        entry = manifest.get_entry(resolved_required)
        if entry is None:
            raise VersionNotFoundError(name, resolved_required)

        logger.info(f"Preparing for download {name} {resolved_required}")
        snapshot = state
        current = PackageState(
            status=STATUS_DOWNLOADING,
            version=resolved_required,
            old_version=state.version if state else None,
        )
        self.store.set_package_state(name, current)

        self._in_progress.add(name)
        try:
            await self._install_dependencies(name, entry)

            archive = await self.repository.fetch_archive(
                name, manifest, resolved_required, candidate.origin_url, self.progress_callback
            )

            logger.info(f"Unpacking {name}...")
            current = current.model_copy(update={"status": STATUS_INSTALLING})
            self.store.set_package_state(name, current)

            await self._apply_archive(name, archive)
        except Exception as e:
            logger.error(f"Installing {name} {resolved_required} failed, reverting state: {e}")
            self.store.set_package_state(name, snapshot)
            raise
        finally:
            self._in_progress.discard(name)

        self.store.set_package_state(name, current.model_copy(update={"status": STATUS_INSTALLED}))
        self._installed_in_walk.add(name)

        logger.info("Installed successfully", package=name, version=resolved_required)
        return InstallResult(name=name, outcome="installed", version=resolved_required)

    def _next_chain_version(self, manifest: PackageManifest, current: str | None, ceiling: str) -> str | None:
        """
        Concrete version to install next when upgrades may not skip releases.

        Only versions up to ``ceiling`` are considered. Returns the lowest of
        them when nothing is installed, and ``current`` when there is nothing
        newer to step to.
        """
        limit = parse_version(ceiling)
        ordered = [v for v in manifest.concrete_versions() if parse_version(v) <= limit]
        if not ordered:
            return current
        if current is None:
            return ordered[0]
        installed = parse_version(current)
        return next((v for v in ordered if parse_version(v) > installed), current)

    async def _install_dependencies(self, name: str, entry: VersionEntry) -> None:
        for dependency, constraint in entry.dependencies.items():
            if dependency in self._in_progress:
                logger.warning(f"Dependency cycle: {dependency} is already being installed, skipping")
                continue
            if self._is_satisfied(dependency, constraint):
                logger.debug(f"Dependency {dependency} ({constraint}) already satisfied")
                continue

            logger.info(f"Installing dependency {dependency} ({constraint}) of {name}")
            try:
                await self._install(dependency, constraint, False)
            except VersionNotFoundError as e:
                raise DependencyVersionNotFoundError(name, dependency, constraint) from e
            except AlreadyUpToDateError:
                logger.debug(f"Dependency {dependency} is up to date")

        node_packages = [NodeDependency(name=n, version=v) for n, v in entry.node_dependencies.items()]
        if node_packages:
            await self.node.install(node_packages)

    def _is_satisfied(self, dependency: str, constraint: str) -> bool:
        state = self.store.get_states().get(dependency)
        if state is None or state.status != STATUS_INSTALLED:
            return False
        if constraint == LATEST:
            return dependency in self._installed_in_walk

        # Aliases such as "stable" are resolved through the cached manifest
        cached = self.store.get_metadata().get(dependency)
        wanted = resolve_alias(cached, constraint, self.max_alias_depth) if cached is not None else None
        return versions_equal(wanted or constraint, state.version)

    # ------------------------------------------------------------------
    # Archive handling
    # ------------------------------------------------------------------

    async def _apply_archive(self, name: str, archive: Path) -> None:
        """Extract an archive into the install root and register its hooks."""
        with tempfile.TemporaryDirectory(prefix=f"{name}-scripts-") as scratch:
            hooks = await asyncio.to_thread(self._extract_archive, archive, Path(scratch))

            for kind in HOOK_KINDS:
                self.scripts.remove_script(name, kind)
            for kind, path in hooks.items():
                self.scripts.add_script(name, path, kind)

        if self.scripts.has_script(name, "install"):
            logger.info(f"Configuring {name}...")
            await self.scripts.run_script(name, "install")

    def _extract_archive(self, archive: Path, scratch: Path) -> dict[ScriptKind, Path]:
        """
        Extract ``archive`` under the install root, keeping hooks out of it.

        Returns:
            Mapping of hook kind to its extracted location inside ``scratch``
        """
        root = self.install_root.resolve()
        root.mkdir(parents=True, exist_ok=True)
        hooks: dict[ScriptKind, Path] = {}

        try:
            with zipfile.ZipFile(archive) as zf:
                members = []
                for info in zf.infolist():
                    entry_name = info.filename
                    if entry_name.startswith(SCRIPTS_PREFIX):
                        match = HOOK_ENTRY_PATTERN.match(entry_name)
                        if match:
                            target = scratch / PurePosixPath(entry_name).name
                            target.write_bytes(zf.read(info))
                            hooks[match.group("kind")] = target  # type: ignore[index]
                        continue
                    if not (root / entry_name).resolve().is_relative_to(root):
                        raise OperationalError("install.archive.unsafe_path", entry=entry_name)
                    members.append(info)

                zf.extractall(root, members=members)
        except zipfile.BadZipFile as e:
            raise OperationalError("install.archive.invalid", path=str(archive), error=str(e)) from e

        return hooks

    def _remove_files(self, entry: VersionEntry) -> None:
        root = self.install_root.resolve()
        for relative, file in entry.files.items():
            if file.uninstall_action != "remove":
                continue

            target = (root / relative).resolve()
            if not target.is_relative_to(root):
                logger.warning(f"Skipping file outside the install root: {relative}")
                continue
            if target.is_dir():
                shutil.rmtree(target)
            elif target.exists():
                target.unlink()
            else:
                logger.warning(f"File already missing: {relative}")

    async def _log_progress(self, downloaded: int, total: int) -> None:
        if total > 0:
            logger.debug(f"Downloaded {downloaded}/{total} bytes ({downloaded * 100 // total}%)")
