"""npm delegate for Node dependencies of feature packages."""

from pathlib import Path

from featurepkg.exceptions import OperationalError
from featurepkg.logger import get_logger
from featurepkg.models.operation import NodeDependency
from featurepkg.utils.subprocess_executor import SubprocessExecutor

logger = get_logger(__name__)


class NodePackageManager:
    """Installs and uninstalls npm packages in the install root, one batch per call."""

    def __init__(self, cwd: Path, executable: str = "npm") -> None:
        self.cwd = cwd
        self.executable = executable

    async def install(self, packages: list[NodeDependency]) -> None:
        await self._run("install", packages)

    async def uninstall(self, packages: list[NodeDependency]) -> None:
        await self._run("uninstall", packages)

    async def _run(self, command: str, packages: list[NodeDependency]) -> None:
        if not packages:
            return

        specs = [f"{p.name}@{p.version}" for p in packages]
        logger.info(f"Running npm {command} for {len(specs)} package(s)", packages=specs)

        self.cwd.mkdir(parents=True, exist_ok=True)
        code = await SubprocessExecutor.run_streaming(self.executable, command, *specs, cwd=self.cwd)
        if code != 0:
            raise OperationalError("node.command.failed", command=command, code=code)
