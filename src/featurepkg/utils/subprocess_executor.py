"""Subprocess execution with output streamed into the log."""

import asyncio
from collections import deque
from collections.abc import Awaitable, Callable
from pathlib import Path

from featurepkg.logger import get_logger

logger = get_logger(__name__)


class SubprocessExecutor:
    """Runs external commands (npm, lifecycle hooks) on the event loop."""

    @staticmethod
    async def run_streaming(
        *args: str,
        cwd: Path | str | None = None,
        env: dict[str, str] | None = None,
        line_callback: Callable[[str], Awaitable[None]] | None = None,
        max_buffer_lines: int = 200,
    ) -> int:
        """
        Execute a command, logging each output line as it is produced.

        stderr is merged into stdout. When the command fails, the last
        ``max_buffer_lines`` lines are logged at error level.

        Args:
            *args: Command arguments
            cwd: Working directory
            env: Environment variables (inherits the current environment if None)
            line_callback: Awaited with every output line
            max_buffer_lines: Size of the tail kept for error reporting

        Returns:
            The process exit code
        """
        cmd_str = " ".join(args)
        logger.debug(f"Executing subprocess: {cmd_str}")
        if cwd:
            logger.debug(f"Working directory: {cwd}")

        process = await asyncio.create_subprocess_exec(
            *args,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.STDOUT,
            cwd=str(cwd) if cwd else None,
            env=env,
        )

        tail: deque[str] = deque(maxlen=max_buffer_lines)
        assert process.stdout is not None
        async for raw in process.stdout:
            line = raw.decode("utf-8", errors="replace").rstrip("\r\n")
            tail.append(line)
            logger.debug(f"Subprocess: {line}")
            if line_callback:
                await line_callback(line)

        returncode = await process.wait()
        if returncode != 0:
            logger.error(f"Subprocess failed with code {returncode}: {cmd_str}")
            logger.error(f"Error output (last {max_buffer_lines} lines): " + "\n".join(tail))
        return returncode
