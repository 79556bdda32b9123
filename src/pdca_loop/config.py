"""
Configuration schema using Pydantic.

Secrets are loaded exclusively from environment variables.
Configuration can be loaded from YAML files, task files, or environment variables.
"""

import os
from pathlib import Path
from typing import Optional, List, Dict, Any

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from pdca_loop.termination import DEFAULT_COMPLETION_PROMISE, DEFAULT_MAX_ITERATIONS

# Seven days, matching the longest run an unattended loop is allowed
DEFAULT_PRODUCER_TIMEOUT_SECONDS = 7 * 24 * 60 * 60


class ConfigurationError(Exception):
    """Raised when configuration is invalid or missing required values."""

    def __init__(self, message: str, field: Optional[str] = None, suggestions: Optional[List[str]] = None):
        self.message = message
        self.field = field
        self.suggestions = suggestions or []
        super().__init__(self._format_message())

    def _format_message(self) -> str:
        lines = [self.message]
        if self.field:
            lines.append(f"  Field: {self.field}")
        if self.suggestions:
            lines.append("  Suggestions:")
            for s in self.suggestions:
                lines.append(f"    - {s}")
        return "\n".join(lines)


def get_secret(key: str, required: bool = False) -> Optional[str]:
    """
    Get a secret from environment variables.

    Raises:
        ConfigurationError: If a required secret is missing
    """
    value = os.environ.get(key)
    if required and not value:
        suggestions = [f"Set environment variable: export {key}=your-key-here"]
        if key in ("GEMINI_API_KEY", "GOOGLE_API_KEY"):
            suggestions.append("Get your API key from: https://aistudio.google.com/apikey")
        suggestions.append("Or use '--producer command' to drive a local agent CLI")
        raise ConfigurationError(
            f"Required secret '{key}' is not set",
            field=key,
            suggestions=suggestions,
        )
    return value


class LoopConfig(BaseModel):
    """Iteration and termination settings."""

    max_iterations: int = Field(default=DEFAULT_MAX_ITERATIONS, ge=0, description="0 means unbounded")
    completion_promise: str = Field(default=DEFAULT_COMPLETION_PROMISE, min_length=1)
    mode: str = Field(default="auto", pattern="^(auto|confirm)$")
    step_delay_seconds: float = Field(default=1.0, ge=0.0, le=60.0)
    resume_delay_seconds: float = Field(default=1.0, ge=0.0, le=60.0)

    @field_validator("completion_promise")
    @classmethod
    def promise_is_single_line(cls, v: str) -> str:
        v = v.strip()
        if not v or "<" in v or "\n" in v:
            raise ValueError("completion_promise must be a non-empty single line without '<'")
        return v


class ProducerConfig(BaseModel):
    """Command producer (AI agent) settings."""

    kind: str = Field(default="gemini", pattern="^(gemini|command)$")
    model: str = Field(default="gemini-2.5-flash")
    reasoning_effort: Optional[str] = Field(default=None, pattern="^(low|medium|high|xhigh)$")
    timeout_seconds: float = Field(default=DEFAULT_PRODUCER_TIMEOUT_SECONDS, gt=0)
    persona: Optional[str] = None
    command: List[str] = Field(default_factory=lambda: ["copilot", "-p"])
    # Added to the command when a run resumes; "{session_id}" is substituted
    resume_args: List[str] = Field(default_factory=lambda: ["--resume", "{session_id}"])
    api_key_env: str = Field(default="GEMINI_API_KEY", description="Environment variable for API key")


class ExecutorConfig(BaseModel):
    """Command executor settings."""

    kind: str = Field(default="passthrough", pattern="^(passthrough|shell)$")
    timeout_seconds: float = Field(default=300.0, gt=0)
    command_log: Optional[str] = Field(default=None, description="Defaults to <storage>/command.log")


class WatchdogConfig(BaseModel):
    """Backend health probe settings."""

    enabled: bool = True
    interval_seconds: float = Field(default=3.0, gt=0)
    probe_timeout_seconds: float = Field(default=1.0, gt=0)
    failure_threshold: int = Field(default=3, ge=1, le=20)


class StorageConfig(BaseModel):
    """Storage and persistence configuration."""

    base_path: str = Field(default="~/.pdca-loop")


class AppConfig(BaseModel):
    """Root configuration for the PDCA loop."""

    loop: LoopConfig = Field(default_factory=LoopConfig)
    producer: ProducerConfig = Field(default_factory=ProducerConfig)
    executor: ExecutorConfig = Field(default_factory=ExecutorConfig)
    watchdog: WatchdogConfig = Field(default_factory=WatchdogConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)

    @property
    def storage_path(self) -> Path:
        """Get resolved storage path."""
        return Path(self.storage.base_path).expanduser()

    @property
    def logs_path(self) -> Path:
        """Get log directory path."""
        return self.storage_path / "logs"

    @property
    def command_log_path(self) -> Path:
        if self.executor.command_log:
            return Path(self.executor.command_log).expanduser()
        return self.storage_path / "command.log"


class TaskFile(BaseModel):
    """
    A YAML task description passed to ``pdca-loop run``.

    Keys follow the command-line spelling (``max-iterations``, ``think``).
    """

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    prompt: str = Field(min_length=1)
    completion_promise: Optional[str] = Field(default=None, alias="promise")
    max_iterations: Optional[int] = Field(default=None, alias="max-iterations", ge=0)
    model: Optional[str] = None
    reasoning_effort: Optional[str] = Field(default=None, alias="think")
    persona: Optional[str] = None
    timeout: Optional[float] = Field(default=None, gt=0)

    def apply_to(self, config: AppConfig) -> AppConfig:
        """Return a copy of ``config`` with this task's overrides applied."""
        overrides: Dict[str, Any] = {"loop": {}, "producer": {}}
        if self.completion_promise:
            overrides["loop"]["completion_promise"] = self.completion_promise
        if self.max_iterations is not None:
            overrides["loop"]["max_iterations"] = self.max_iterations
        if self.model:
            overrides["producer"]["model"] = self.model
        if self.reasoning_effort:
            overrides["producer"]["reasoning_effort"] = self.reasoning_effort
        if self.persona:
            overrides["producer"]["persona"] = self.persona
        if self.timeout:
            overrides["producer"]["timeout_seconds"] = self.timeout
        return merge_overrides(config, overrides)


def get_default_config_path() -> Path:
    """Get default config file path."""
    return Path.home() / ".pdca-loop" / "config.yaml"


def _read_yaml(path: Path) -> Dict[str, Any]:
    try:
        with open(path, "r") as f:
            data = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        mark = getattr(e, "problem_mark", None)
        raise ConfigurationError(
            f"Invalid YAML in file: {path}",
            suggestions=[
                f"Check syntax at line {mark.line + 1 if mark else 'unknown'}",
                "Use a YAML validator to check the file",
            ],
        )
    if not isinstance(data, dict):
        raise ConfigurationError(
            f"Expected a mapping at the top level of {path}",
            suggestions=["Write the file as 'key: value' pairs"],
        )
    return data


def load_config(config_path: Optional[str] = None) -> AppConfig:
    """
    Load configuration from YAML file.

    Falls back to defaults if the default file doesn't exist.
    Environment variables override config file values.

    Args:
        config_path: Path to config file (optional)

    Returns:
        Loaded configuration

    Raises:
        ConfigurationError: If config file is missing or invalid
    """
    if config_path:
        path = Path(config_path).expanduser()
        if not path.exists():
            raise ConfigurationError(
                f"Config file not found: {path}",
                suggestions=[
                    f"Create the config file at {path}",
                    "Or run without --config to use defaults",
                ],
            )
    else:
        path = get_default_config_path()

    data: Dict[str, Any] = {}
    if path.exists():
        data = _read_yaml(path)

    data = _deep_merge(data, _get_env_overrides())

    try:
        return AppConfig(**data)
    except ValidationError as e:
        raise ConfigurationError(
            f"Invalid configuration: {e}",
            suggestions=[
                "Check field names and values in your config",
                "Remove the file to fall back to defaults",
            ],
        )


def load_task_file(task_path: str) -> TaskFile:
    """
    Load a YAML task file.

    Raises:
        ConfigurationError: If the file is missing, malformed, or has no prompt
    """
    path = Path(task_path).expanduser()
    if not path.is_file():
        raise ConfigurationError(f"Task file not found: {path}", field="task_file")

    data = _read_yaml(path)
    try:
        return TaskFile(**data)
    except ValidationError as e:
        raise ConfigurationError(
            f"Invalid task file {path}: {e}",
            field="task_file",
            suggestions=["A task file needs at least a non-empty 'prompt' key"],
        )


def merge_overrides(config: AppConfig, overrides: Dict[str, Any]) -> AppConfig:
    """Re-validate ``config`` with nested overrides applied."""
    data = _deep_merge(config.model_dump(), overrides)
    try:
        return AppConfig(**data)
    except ValidationError as e:
        raise ConfigurationError(f"Invalid option: {e}")


def _get_env_overrides() -> Dict[str, Any]:
    """Get configuration overrides from environment variables."""
    overrides: Dict[str, Any] = {}

    env_mappings = {
        "PDCA_LOOP_MAX_ITERATIONS": ("loop", "max_iterations"),
        "PDCA_LOOP_PROMISE": ("loop", "completion_promise"),
        "PDCA_LOOP_MODE": ("loop", "mode"),
        "PDCA_LOOP_PRODUCER": ("producer", "kind"),
        "PDCA_LOOP_MODEL": ("producer", "model"),
        "PDCA_LOOP_PERSONA": ("producer", "persona"),
        "PDCA_LOOP_EXECUTOR": ("executor", "kind"),
        "PDCA_LOOP_STORAGE_PATH": ("storage", "base_path"),
    }

    for env_key, (section, field) in env_mappings.items():
        value: Any = os.environ.get(env_key)
        if value:
            if section not in overrides:
                overrides[section] = {}
            if field == "max_iterations" and value.isdigit():
                value = int(value)
            overrides[section][field] = value

    return overrides


def _deep_merge(base: Dict, overlay: Dict) -> Dict:
    """Deep merge two dictionaries."""
    result = base.copy()
    for key, value in overlay.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def save_config(config: AppConfig, config_path: Optional[str] = None) -> Path:
    """Save configuration to YAML file."""
    path = Path(config_path).expanduser() if config_path else get_default_config_path()
    path.parent.mkdir(parents=True, exist_ok=True)

    with open(path, "w") as f:
        yaml.dump(config.model_dump(), f, default_flow_style=False)
    return path
