"""Configuration management for featurepkg.

Settings come from a YAML file, then ``FEATUREPKG_*`` environment variables
override individual values.
"""

import os
import sys
from collections.abc import Callable
from pathlib import Path
from typing import Any

import yaml

from featurepkg.models.config import DERIVED_DIRS, AppConfig, PathsConfig

CONFIG_FILE_NAME = "config.yaml"


def default_config_path() -> Path:
    """Location of the config file when none is given explicitly."""
    if env_path := os.getenv("FEATUREPKG_CONFIG_PATH"):
        return Path(env_path).expanduser()

    if sys.platform == "win32":
        base = Path(os.getenv("APPDATA", str(Path.home())))
    elif sys.platform == "darwin":
        base = Path.home() / "Library" / "Application Support"
    else:
        base = Path(os.getenv("XDG_CONFIG_HOME", str(Path.home() / ".config")))
    return base / "featurepkg" / CONFIG_FILE_NAME


def _override_data_dir(config: AppConfig, value: str) -> None:
    # Sub-directories left at their derived default move along with data_dir
    current = config.paths
    derived = PathsConfig(data_dir=current.data_dir)
    kept = {d: getattr(current, d) for d in DERIVED_DIRS if getattr(current, d) != getattr(derived, d)}
    config.paths = PathsConfig(data_dir=Path(value).expanduser(), **kept)


def _override_install_root(config: AppConfig, value: str) -> None:
    config.paths.install_root = Path(value).expanduser()


def _override_log_level(config: AppConfig, value: str) -> None:
    if value.upper() in ("INFO", "DEBUG", "TRACE"):
        config.advanced.log_level = value.upper()  # type: ignore[assignment]


def _override_request_timeout(config: AppConfig, value: str) -> None:
    seconds = float(value)
    config.repositories.request_timeout = seconds if seconds > 0 else None


def _override_npm(config: AppConfig, value: str) -> None:
    config.install.node_executable = value


# Applied in this order; FEATUREPKG_DATA_DIR first so INSTALL_ROOT can refine it
ENV_OVERRIDES: dict[str, Callable[[AppConfig, str], None]] = {
    "FEATUREPKG_DATA_DIR": _override_data_dir,
    "FEATUREPKG_INSTALL_ROOT": _override_install_root,
    "FEATUREPKG_LOG_LEVEL": _override_log_level,
    "FEATUREPKG_REQUEST_TIMEOUT": _override_request_timeout,
    "FEATUREPKG_NPM": _override_npm,
}


class ConfigManager:
    """Loads, caches and saves the application configuration."""

    def __init__(self, config_path: Path | None = None) -> None:
        """
        Args:
            config_path: YAML file to use; see default_config_path() when omitted
        """
        self.config_path = config_path or default_config_path()
        self._config: AppConfig | None = None

    def load(self) -> AppConfig:
        """Read the YAML file (a missing file means defaults) and apply env overrides."""
        raw: dict[str, Any] = {}
        if self.config_path.exists():
            with open(self.config_path, encoding="utf-8") as f:
                raw = yaml.safe_load(f) or {}

        config = AppConfig(**raw)
        for variable, apply in ENV_OVERRIDES.items():
            if value := os.getenv(variable):
                apply(config, value)
        return config

    def save(self, config: AppConfig) -> None:
        self.config_path.parent.mkdir(parents=True, exist_ok=True)
        # mode="json" turns Path values into plain strings
        data = config.model_dump(mode="json", exclude_none=True)
        with open(self.config_path, "w", encoding="utf-8") as f:
            yaml.dump(data, f, default_flow_style=False, allow_unicode=True, sort_keys=False)

    def get_config(self) -> AppConfig:
        if self._config is None:
            self._config = self.load()
        return self._config

    def reload(self) -> AppConfig:
        self._config = self.load()
        return self._config


_config_manager = ConfigManager()


def get_config() -> AppConfig:
    """Process-wide configuration, loaded on first use."""
    return _config_manager.get_config()


def reload_config() -> AppConfig:
    return _config_manager.reload()


def save_config(config: AppConfig) -> None:
    _config_manager.save(config)
