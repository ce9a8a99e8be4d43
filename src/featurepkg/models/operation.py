"""Values exchanged between the install engine, the repository client and callers."""

from typing import Literal

from pydantic import BaseModel

from featurepkg.models.manifest import PackageManifest


class ManifestCandidate(BaseModel):
    """A manifest together with the info URL it was served from."""

    manifest: PackageManifest
    origin_url: str


class NodeDependency(BaseModel):
    """An npm package requested by a feature package."""

    name: str
    version: str


class InstallResult(BaseModel):
    """
    Outcome of PackageInstaller.install.

    install() recovers from failures by reverting persisted state instead of
    raising, so ``reverted`` carries the error text for callers that need it.
    """

    name: str
    outcome: Literal["installed", "already_up_to_date", "reverted"]
    version: str | None = None
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.outcome != "reverted"


class RemoveResult(BaseModel):
    """Outcome of PackageInstaller.remove."""

    name: str
    outcome: Literal["removed", "not_installed"]
    version: str | None = None
