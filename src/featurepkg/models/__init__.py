"""Data models for featurepkg."""

from featurepkg.models.config import AppConfig
from featurepkg.models.manifest import (
    AliasEntry,
    PackageManifest,
    VersionEntry,
    VersionFile,
    resolve_alias,
)
from featurepkg.models.operation import InstallResult, ManifestCandidate, NodeDependency, RemoveResult
from featurepkg.models.state import LockDocument, LockStatus, PackageState, RepositorySource

__all__ = [
    "AppConfig",
    "AliasEntry",
    "InstallResult",
    "LockDocument",
    "LockStatus",
    "ManifestCandidate",
    "NodeDependency",
    "PackageManifest",
    "PackageState",
    "RemoveResult",
    "RepositorySource",
    "VersionEntry",
    "VersionFile",
    "resolve_alias",
]
