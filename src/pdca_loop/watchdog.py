"""
Backend health watchdog.

While a producer call is in flight, the backend is probed on a fixed
interval. Enough consecutive failed probes abandon the call and raise
ProducerStalled so the caller can return control to the user.
"""

import asyncio
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional, TypeVar

from pdca_loop.config import WatchdogConfig
from pdca_loop.controller import LoopAborted
from pdca_loop.logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")

Probe = Callable[[], Awaitable[Any]]


class ProducerStalled(LoopAborted):
    """Raised when the producer backend stops answering health probes."""

    def __init__(self, failures: int, message: str = "Producer backend stopped responding"):
        self.failures = failures
        super().__init__(f"{message} ({failures} failed probes)")


@dataclass
class WatchdogState:
    """Runtime probe statistics."""

    consecutive_failures: int = 0
    total_probes: int = 0
    total_failures: int = 0
    last_success_time: Optional[float] = None
    last_failure_time: Optional[float] = None


class HealthWatchdog:
    """
    Races a call against a periodic health probe.

    The probe is any async callable; it fails by raising, by exceeding the
    probe timeout, or by returning ``False``.
    """

    def __init__(
        self,
        probe: Probe,
        interval: float = 3.0,
        probe_timeout: float = 1.0,
        failure_threshold: int = 3,
        on_stall: Optional[Callable[[int], None]] = None,
    ):
        """
        Initialize the watchdog.

        Args:
            probe: Async health check for the producer backend
            interval: Seconds between probes
            probe_timeout: Seconds before a single probe counts as failed
            failure_threshold: Consecutive failures that abort the call
            on_stall: Called with the failure count when a call is aborted
        """
        self.probe = probe
        self.interval = interval
        self.probe_timeout = probe_timeout
        self.failure_threshold = failure_threshold
        self.on_stall = on_stall
        self._state = WatchdogState()

    @classmethod
    def from_config(
        cls,
        config: WatchdogConfig,
        probe: Probe,
        on_stall: Optional[Callable[[int], None]] = None,
    ) -> "HealthWatchdog":
        return cls(
            probe=probe,
            interval=config.interval_seconds,
            probe_timeout=config.probe_timeout_seconds,
            failure_threshold=config.failure_threshold,
            on_stall=on_stall,
        )

    @property
    def consecutive_failures(self) -> int:
        return self._state.consecutive_failures

    def reset(self) -> None:
        self._state.consecutive_failures = 0

    async def probe_once(self) -> bool:
        """Run a single probe and record the outcome."""
        self._state.total_probes += 1
        try:
            result = await asyncio.wait_for(self.probe(), timeout=self.probe_timeout)
        except asyncio.TimeoutError:
            ok = False
            logger.warning("Health probe timed out", timeout=self.probe_timeout)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            ok = False
            logger.warning("Health probe failed", error=str(e))
        else:
            ok = result is not False

        if ok:
            self._state.consecutive_failures = 0
            self._state.last_success_time = time.time()
        else:
            self._state.consecutive_failures += 1
            self._state.total_failures += 1
            self._state.last_failure_time = time.time()
            logger.debug(
                "Health probe failure recorded",
                consecutive=self._state.consecutive_failures,
                threshold=self.failure_threshold,
            )
        return ok

    async def _monitor(self) -> None:
        """Probe until the failure threshold is reached."""
        while True:
            await asyncio.sleep(self.interval)
            await self.probe_once()
            if self._state.consecutive_failures >= self.failure_threshold:
                return

    async def guard(self, awaitable: Awaitable[T]) -> T:
        """
        Await ``awaitable`` while probing the backend.

        Raises:
            ProducerStalled: If the probe fails ``failure_threshold`` times in a row
        """
        self.reset()
        call = asyncio.ensure_future(awaitable)
        monitor = asyncio.ensure_future(self._monitor())
        try:
            done, _ = await asyncio.wait({call, monitor}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            call.cancel()
            raise
        finally:
            monitor.cancel()

        if call in done:
            return call.result()

        call.cancel()
        failures = self._state.consecutive_failures
        logger.error("Producer stalled, abandoning call", failures=failures)
        if self.on_stall:
            self.on_stall(failures)
        raise ProducerStalled(failures)

    def get_stats(self) -> dict[str, Any]:
        """Get watchdog statistics."""
        return {
            "consecutive_failures": self._state.consecutive_failures,
            "total_probes": self._state.total_probes,
            "total_failures": self._state.total_failures,
            "last_success_time": self._state.last_success_time,
            "last_failure_time": self._state.last_failure_time,
        }
