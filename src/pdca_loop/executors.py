"""
Command executors (the acting side of the loop).
"""

import asyncio
from pathlib import Path
from typing import Optional

from pdca_loop.config import AppConfig
from pdca_loop.context import RunContext
from pdca_loop.controller import Executor, passthrough_executor
from pdca_loop.logging import get_logger
from pdca_loop.state import utc_now_iso

logger = get_logger(__name__)


class ShellExecutor:
    """
    Runs each action as a shell command.

    Every command is appended to a log as ``<iso-ts> [<session_id>] <command>``
    before it runs.
    """

    def __init__(
        self,
        session_id: str,
        command_log: Optional[Path] = None,
        timeout_seconds: float = 300.0,
        cwd: Optional[Path] = None,
    ):
        self.session_id = session_id
        self.command_log = command_log
        self.timeout_seconds = timeout_seconds
        self.cwd = cwd

    def log_command(self, command: str) -> None:
        if not self.command_log:
            return
        self.command_log.parent.mkdir(parents=True, exist_ok=True)
        with open(self.command_log, "a", encoding="utf-8") as f:
            f.write(f"{utc_now_iso()} [{self.session_id}] {command}\n")

    async def __call__(self, action: str, preamble: str) -> str:
        """
        Run ``action`` and return its combined output with the exit status.

        A timeout kills the process and is reported in the returned text.
        """
        command = action.strip()
        if not command:
            return ""

        self.log_command(command)
        logger.info("Executing command", length=len(command))

        process = await asyncio.create_subprocess_shell(
            command,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.STDOUT,
            cwd=self.cwd,
        )
        try:
            stdout, _ = await asyncio.wait_for(process.communicate(), timeout=self.timeout_seconds)
        except asyncio.TimeoutError:
            process.kill()
            await process.wait()
            logger.warning("Command timed out", timeout=self.timeout_seconds)
            return f"Error: command timed out after {self.timeout_seconds}s"
        except asyncio.CancelledError:
            if process.returncode is None:
                process.kill()
            raise

        output = stdout.decode("utf-8", errors="replace")
        logger.info("Command finished", returncode=process.returncode)
        return f"{output.rstrip()}\n[exit status {process.returncode}]".lstrip("\n")


def build_executor(config: AppConfig, context: RunContext) -> Executor:
    """Create the executor named by ``config.executor.kind``."""
    if config.executor.kind == "shell":
        return ShellExecutor(
            session_id=context.session_id,
            command_log=config.command_log_path,
            timeout_seconds=config.executor.timeout_seconds,
        )
    return passthrough_executor
