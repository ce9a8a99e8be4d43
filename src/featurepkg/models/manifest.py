"""
Package manifest models.

A manifest is the per-package document served by a repository branch. It maps
version keys either to installable content (``VersionEntry``) or to another
version key (``AliasEntry``); ``"latest"`` is conventionally an alias.

Wire names (``sha-256``, ``nodeDependencies``, ``uninstall-action``,
``chainUpdate``, ``system``) are kept as field aliases so that documents
round-trip unchanged through ``model_dump(by_alias=True)``.
"""

from collections.abc import Iterable
from typing import Annotated, Literal

import semver
from pydantic import BaseModel, ConfigDict, Field

from featurepkg.exceptions import AliasCycleError, ValidationError

LATEST = "latest"
DEFAULT_MAX_ALIAS_DEPTH = 32


class VersionFile(BaseModel):
    """A file shipped by a version, relative to the install root."""

    model_config = ConfigDict(populate_by_name=True)

    hashsum: str = ""
    uninstall_action: Literal["remove", "ignore"] = Field(default="remove", alias="uninstall-action")


class VersionEntry(BaseModel):
    """Installable content of one concrete version."""

    model_config = ConfigDict(populate_by_name=True)

    type: Literal["version"] = "version"
    sha256: str = Field(default="", alias="sha-256")
    dependencies: dict[str, str] = Field(default_factory=dict)
    node_dependencies: dict[str, str] = Field(default_factory=dict, alias="nodeDependencies")
    files: dict[str, VersionFile] = Field(default_factory=dict)


class AliasEntry(BaseModel):
    """A version key redirecting to another version key."""

    type: Literal["alias"] = "alias"
    alias: str


ManifestVersion = Annotated[VersionEntry | AliasEntry, Field(discriminator="type")]


class PackageManifest(BaseModel):
    """Available versions of a package and its upgrade policy."""

    model_config = ConfigDict(populate_by_name=True)

    # Removal of a system package is refused (see PackageInstaller.remove)
    is_system: bool = Field(default=False, alias="system")
    # Upgrades must walk every concrete version in order
    is_chain_update: bool = Field(default=False, alias="chainUpdate")
    versions: dict[str, ManifestVersion] = Field(default_factory=dict)

    def get_entry(self, key: str) -> VersionEntry | None:
        """Return the concrete entry stored under ``key`` (aliases are not followed)."""
        entry = self.versions.get(key)
        return entry if isinstance(entry, VersionEntry) else None

    def concrete_versions(self) -> list[str]:
        """Concrete version keys in ascending semantic-version order."""
        return sort_versions(k for k, v in self.versions.items() if isinstance(v, VersionEntry))


def parse_version(value: str) -> semver.Version:
    """Parse a strict semantic version (pre-releases rank below their release)."""
    try:
        return semver.Version.parse(value)
    except (TypeError, ValueError) as e:
        raise ValidationError("manifest.version.invalid", version=value) from e


def sort_versions(keys: Iterable[str]) -> list[str]:
    return sorted(keys, key=parse_version)


def versions_equal(a: str, b: str) -> bool:
    """Semantic equality (build metadata ignored); keys that are not versions compare as text."""
    try:
        return parse_version(a) == parse_version(b)
    except ValidationError:
        return a == b


def resolve_alias(
    manifest: PackageManifest, key: str, max_depth: int = DEFAULT_MAX_ALIAS_DEPTH
) -> str | None:
    """
    Follow alias links from ``key`` to a concrete version key.

    Args:
        manifest: Manifest holding the version mapping
        key: Version key or alias to resolve
        max_depth: Maximum number of alias hops before giving up

    Returns:
        The terminal concrete version key, or None when ``key`` (or any link on
        the way) is not present in the manifest

    Raises:
        AliasCycleError: If the chain is longer than ``max_depth``
    """
    current = key
    for _ in range(max_depth + 1):
        entry = manifest.versions.get(current)
        if entry is None:
            return None
        if isinstance(entry, VersionEntry):
            return current
        current = entry.alias
    raise AliasCycleError(key, max_depth)
