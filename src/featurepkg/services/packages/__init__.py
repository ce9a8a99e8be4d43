"""Package management services."""

from functools import lru_cache
from pathlib import Path

from featurepkg.config import get_config
from featurepkg.exceptions import ValidationError
from featurepkg.models.config import PathsConfig

from .installer import PackageInstaller
from .node import NodePackageManager
from .repository import RepositoryClient, parse_info_url, select_version
from .scripts import ScriptStore
from .store import StateStore


def _required_path(paths: PathsConfig, field: str) -> Path:
    value = getattr(paths, field)
    if value is None:
        raise ValidationError("config.path.unset", field=f"paths.{field}")
    return value


@lru_cache
def get_installer() -> PackageInstaller:
    """Build the installer from the global configuration (singleton)."""
    config = get_config()
    paths = config.paths
    install_root = _required_path(paths, "install_root")
    staging_dir = _required_path(paths, "staging_dir")
    scripts_dir = _required_path(paths, "scripts_dir")

    store = StateStore(paths.data_dir)
    store.initialize(config.repositories.default_sources)

    repository = RepositoryClient(
        store,
        staging_dir,
        timeout=config.repositories.request_timeout,
        verify_downloads=config.install.verify_downloads,
        max_alias_depth=config.install.max_alias_depth,
    )
    return PackageInstaller(
        store=store,
        repository=repository,
        scripts=ScriptStore(scripts_dir, cwd=install_root),
        node=NodePackageManager(install_root, executable=config.install.node_executable),
        install_root=install_root,
        max_alias_depth=config.install.max_alias_depth,
        protect_system_packages=config.install.protect_system_packages,
    )


__all__ = [
    "NodePackageManager",
    "PackageInstaller",
    "RepositoryClient",
    "ScriptStore",
    "StateStore",
    "get_installer",
    "parse_info_url",
    "select_version",
]
