"""
Settings for the persisted loop hook, read from the environment.
"""

from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from pdca_loop.termination import DEFAULT_COMPLETION_PROMISE


class HookSettings(BaseSettings):
    """Hook configuration. Every field can be set as ``PDCA_LOOP_HOOK_<NAME>``."""

    model_config = SettingsConfigDict(env_prefix="PDCA_LOOP_HOOK_", extra="ignore")

    state_file: Path = Field(default=Path(".pdca-loop/loop.local.md"))
    log_dir: Path = Field(default=Path("~/.pdca-loop/logs"))
    default_max_iterations: int = Field(default=50, ge=0)
    default_completion_promise: str = Field(default=DEFAULT_COMPLETION_PROMISE, min_length=1)
    # Completion is only checked once the iteration exceeds this
    grace_iterations: int = Field(default=2, ge=0)
    max_field_length: int = Field(default=100_000, ge=1)

    @property
    def log_file(self) -> Path:
        return self.log_dir.expanduser() / "hooks.log"
