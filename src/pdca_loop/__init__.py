"""
PDCA Loop - bounded Plan-Do-Check-Act iteration around an AI agent.
"""

__version__ = "0.3.0"

from pdca_loop.termination import (
    detect_completion,
    should_continue,
    DEFAULT_COMPLETION_PROMISE,
    EXIT_SENTINEL,
)
from pdca_loop.state import LoopState, LoopPhase, Mode, StopReason
from pdca_loop.controller import LoopController

__all__ = [
    "__version__",
    "detect_completion",
    "should_continue",
    "DEFAULT_COMPLETION_PROMISE",
    "EXIT_SENTINEL",
    "LoopState",
    "LoopPhase",
    "Mode",
    "StopReason",
    "LoopController",
]
