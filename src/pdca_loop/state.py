"""
Loop state owned by the in-process controller.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Optional, Any
from dataclasses import dataclass, asdict

from pdca_loop.logging import get_logger
from pdca_loop.termination import DEFAULT_COMPLETION_PROMISE, DEFAULT_MAX_ITERATIONS

logger = get_logger(__name__)


def utc_now_iso() -> str:
    """Get current UTC time as ISO string."""
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


class Mode(str, Enum):
    """How proposed actions reach the executor."""

    AUTO = "auto"
    CONFIRM = "confirm"


class LoopPhase(str, Enum):
    """Controller phases."""

    IDLE = "idle"
    RUNNING = "running"
    PAUSED = "paused"
    AWAITING_CONFIRMATION = "awaiting_confirmation"
    COMPLETED = "completed"


class StopReason(str, Enum):
    """Why the last cycle ended."""

    COMPLETION_PROMISE = "completion_promise"
    MAX_ITERATIONS = "max_iterations"
    INTERRUPTED = "interrupted"
    STALLED = "stalled"
    EXIT_REQUESTED = "exit_requested"


@dataclass
class LoopState:
    """Counters and flags for one controller."""

    max_iterations: int = DEFAULT_MAX_ITERATIONS
    completion_promise: str = DEFAULT_COMPLETION_PROMISE
    mode: Mode = Mode.AUTO
    iteration: int = 0
    paused: bool = False
    phase: LoopPhase = LoopPhase.IDLE
    stop_reason: Optional[StopReason] = None
    last_activity_at: Optional[str] = None

    def reset_cycle(self) -> None:
        """Start a new top-level cycle."""
        self.iteration = 0
        self.paused = False
        self.stop_reason = None

    def transition_to(self, phase: LoopPhase) -> None:
        """Transition to a new phase."""
        if phase == self.phase:
            return
        old_phase = self.phase
        self.phase = phase
        self.last_activity_at = utc_now_iso()
        logger.debug("Phase transition", old=old_phase.value, new=phase.value)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        data = asdict(self)
        data["mode"] = self.mode.value
        data["phase"] = self.phase.value
        data["stop_reason"] = self.stop_reason.value if self.stop_reason else None
        return data
