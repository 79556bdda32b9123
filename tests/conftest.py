"""
Pytest configuration and fixtures.
"""

import asyncio
import io
import tempfile
from pathlib import Path
from typing import List

import pytest
from rich.console import Console

from pdca_loop.logging import setup_logging
from pdca_loop.persisted.settings import HookSettings
from pdca_loop.shell import InputClosed


@pytest.fixture(scope="session", autouse=True)
def quiet_logging():
    """Route structlog through stdlib with no console output."""
    setup_logging(level="DEBUG", console=False)


@pytest.fixture
def temp_dir():
    """Per-test temporary directory."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def temp_file(temp_dir):
    """Create a temporary file."""
    def _create(name: str, content: str = "") -> Path:
        path = temp_dir / name
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content)
        return path
    return _create


@pytest.fixture
def hook_settings(temp_dir):
    """Hook settings rooted in the temp directory."""
    return HookSettings(
        state_file=temp_dir / ".pdca-loop" / "loop.local.md",
        log_dir=temp_dir / "logs",
    )


@pytest.fixture
def console():
    """Console writing to an in-memory buffer; read it with ``console.file.getvalue()``."""
    return Console(file=io.StringIO(), force_terminal=False, width=200, color_system=None)


class ScriptedReader:
    """Line reader that replays a fixed list of lines, then reports end of file."""

    def __init__(self, lines: List[str]):
        self.lines = list(lines)
        self.prompts: List[str] = []
        self.closed = False

    async def readline(self, prompt: str) -> str:
        if self.closed or not self.lines:
            raise InputClosed()
        self.prompts.append(prompt)
        await asyncio.sleep(0)
        return self.lines.pop(0)

    def close(self) -> None:
        self.closed = True


@pytest.fixture
def scripted_reader():
    def _create(lines: List[str]) -> ScriptedReader:
        return ScriptedReader(lines)
    return _create

