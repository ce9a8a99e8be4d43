"""Persisted package state, repository source and lock models."""

from typing import Literal

from pydantic import BaseModel, ConfigDict, Field

from featurepkg.exceptions import ValidationError

STATUS_DOWNLOADING = "downloading"
STATUS_INSTALLING = "installing"
STATUS_INSTALLED = "installed"

PackageStatus = Literal["downloading", "installing", "installed"]


class PackageState(BaseModel):
    """Entry of state.json; a missing entry means the package is not installed."""

    model_config = ConfigDict(populate_by_name=True)

    status: PackageStatus
    version: str
    old_version: str | None = Field(default=None, alias="oldVersion")


class RepositorySource(BaseModel):
    """A remote repository and the branches queried on it."""

    model_config = ConfigDict(populate_by_name=True)

    url: str
    branches: list[str] = Field(default_factory=list)
    active_branches: list[str] = Field(default_factory=list, alias="active-branches")

    def add_branch(self, name: str) -> None:
        if name not in self.branches:
            self.branches.append(name)

    def remove_branch(self, name: str) -> None:
        """Forget a branch; it stops being queried as well."""
        if name in self.branches:
            self.branches.remove(name)
        self.deactivate_branch(name)

    def activate_branch(self, name: str) -> None:
        if name not in self.branches:
            raise ValidationError("sources.branch.unknown", branch=name, url=self.url)
        if name not in self.active_branches:
            self.active_branches.append(name)

    def deactivate_branch(self, name: str) -> None:
        if name in self.active_branches:
            self.active_branches.remove(name)


class LockDocument(BaseModel):
    """Root structure of lock.json."""

    locked: bool = False


class LockStatus(BaseModel):
    """Lock as seen from one execution context."""

    persisted_locked: bool
    held_by_this_context: bool
