"""Lifecycle hook store.

Packages may ship ``__scripts/install.*`` and ``__scripts/uninstall.*`` in
their archive. The installer hands them to this store, which keeps one copy
per package under ``scripts_dir/<package>/`` and runs them on demand.
"""

import shutil
import sys
from pathlib import Path
from typing import Literal

from featurepkg.exceptions import OperationalError
from featurepkg.logger import get_logger
from featurepkg.utils.subprocess_executor import SubprocessExecutor

logger = get_logger(__name__)

ScriptKind = Literal["install", "uninstall"]

INTERPRETERS = {
    ".py": [sys.executable],
    ".js": ["node"],
    ".mjs": ["node"],
    ".sh": ["sh"],
}


class ScriptStore:
    """Copies, locates, runs and removes lifecycle hooks."""

    def __init__(self, scripts_dir: Path, cwd: Path) -> None:
        """
        Args:
            scripts_dir: Root directory of stored hooks
            cwd: Working directory hooks run in (the install root)
        """
        self.scripts_dir = scripts_dir
        self.cwd = cwd

    def add_script(self, name: str, source_path: Path, kind: ScriptKind) -> None:
        if not source_path.exists():
            return

        self.remove_script(name, kind)
        package_dir = self.scripts_dir / name
        package_dir.mkdir(parents=True, exist_ok=True)
        shutil.copyfile(source_path, package_dir / f"{kind}{source_path.suffix}")
        logger.debug(f"Registered {kind} script for {name}")

    def get_script(self, name: str, kind: ScriptKind) -> Path | None:
        package_dir = self.scripts_dir / name
        if not package_dir.is_dir():
            return None
        return next((p for p in sorted(package_dir.iterdir()) if p.stem == kind and p.is_file()), None)

    def has_script(self, name: str, kind: ScriptKind) -> bool:
        return self.get_script(name, kind) is not None

    async def run_script(self, name: str, kind: ScriptKind) -> None:
        """
        Run a stored hook and wait for it to finish.

        Raises:
            OperationalError: If the hook exits with a non-zero code
        """
        script = self.get_script(name, kind)
        if script is None:
            return

        argv = [*INTERPRETERS.get(script.suffix, []), str(script)]
        self.cwd.mkdir(parents=True, exist_ok=True)
        code = await SubprocessExecutor.run_streaming(*argv, cwd=self.cwd)
        if code != 0:
            raise OperationalError("scripts.run.failed", name=name, kind=kind, code=code)

    def remove_script(self, name: str, kind: ScriptKind) -> None:
        script = self.get_script(name, kind)
        if script is None:
            return

        script.unlink()
        package_dir = script.parent
        if not any(package_dir.iterdir()):
            package_dir.rmdir()
