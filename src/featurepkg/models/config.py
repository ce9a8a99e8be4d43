"""Configuration data models for featurepkg."""

from pathlib import Path
from typing import Literal

from pydantic import BaseModel, Field, field_validator

from featurepkg.models.state import RepositorySource

# Sub-directory of data_dir used for each path that is not set explicitly
DERIVED_DIRS: dict[str, str] = {
    "install_root": "root",
    "staging_dir": "tmp",
    "scripts_dir": "scripts",
}


class PathsConfig(BaseModel):
    """Where documents, staged archives, hooks and installed files live."""

    data_dir: Path = Field(default_factory=lambda: Path.home() / ".featurepkg")
    install_root: Path | None = None
    staging_dir: Path | None = None
    scripts_dir: Path | None = None

    @field_validator("data_dir", "install_root", "staging_dir", "scripts_dir", mode="before")
    @classmethod
    def expand_user(cls, v: str | Path | None) -> Path | None:
        return Path(v).expanduser() if isinstance(v, str) else v

    def model_post_init(self, __context: object) -> None:
        for field, subdir in DERIVED_DIRS.items():
            if getattr(self, field) is None:
                setattr(self, field, self.data_dir / subdir)


class RepositoriesConfig(BaseModel):
    """Remote repository configuration."""

    # Seeds sources.json on first run only; afterwards the document is authoritative
    default_sources: list[RepositorySource] = Field(
        default_factory=lambda: [
            RepositorySource(
                url="https://repo.example.org/",
                branches=["general", "experimental"],
                active_branches=["general"],
            )
        ]
    )
    request_timeout: float | None = 60.0


class InstallConfig(BaseModel):
    """Install engine behaviour."""

    max_alias_depth: int = Field(default=32, ge=1)
    protect_system_packages: bool = True
    verify_downloads: bool = True
    node_executable: str = "npm"


class AdvancedConfig(BaseModel):
    log_level: Literal["INFO", "DEBUG", "TRACE"] = "INFO"


class AppConfig(BaseModel):
    """Application configuration."""

    paths: PathsConfig = Field(default_factory=PathsConfig)
    repositories: RepositoriesConfig = Field(default_factory=RepositoriesConfig)
    install: InstallConfig = Field(default_factory=InstallConfig)
    advanced: AdvancedConfig = Field(default_factory=AdvancedConfig)
