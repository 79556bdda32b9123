"""
LoopController - the in-process Plan-Do-Check-Act state machine.

Each step:
1. Increment the iteration counter
2. Ask the producer for an action (prompt + per-step preamble)
3. Pass the action through the gate (identity in Auto, human in Confirm)
4. Hand the action to the executor exactly once
5. Check the result for the completion phrase or budget exhaustion
6. Either stop (terminal "exit" step) or step the same prompt again

Any await inside a step is raced against the interrupt event, so an
interrupt abandons the in-flight call at once and its result is discarded.
"""

import asyncio
from typing import Any, Awaitable, Callable, Optional, TYPE_CHECKING

from pdca_loop.logging import get_logger
from pdca_loop.prompts import render_preamble
from pdca_loop.state import LoopPhase, LoopState, Mode, StopReason
from pdca_loop.termination import (
    DEFAULT_COMPLETION_PROMISE,
    DEFAULT_MAX_ITERATIONS,
    EXIT_SENTINEL,
    detect_completion,
    should_continue,
)

if TYPE_CHECKING:
    from pdca_loop.watchdog import HealthWatchdog

logger = get_logger(__name__)

Producer = Callable[[str, str], Awaitable[str]]
Executor = Callable[[str, str], Awaitable[str]]
Gate = Callable[[str], Awaitable[Optional[str]]]


class LoopAborted(Exception):
    """Base for conditions that end a step instead of becoming content."""


# Returned by _unless_paused when an interrupt won the race
_ABANDONED = object()


async def passthrough_executor(action: str, preamble: str) -> str:
    """Identity executor: the producer already acted through its own tools."""
    return action


class LoopController:
    """
    Bounded, self-terminating loop around a producer and an executor.

    Subclasses customise the terminal step (``on_exit``) and the reporting
    hooks (``on_step_started``, ``on_action``, ``on_error``, ``on_stop``).
    """

    def __init__(
        self,
        producer: Producer,
        executor: Optional[Executor] = None,
        max_iterations: int = DEFAULT_MAX_ITERATIONS,
        completion_promise: str = DEFAULT_COMPLETION_PROMISE,
        mode: Mode = Mode.AUTO,
        step_delay: float = 0.0,
        watchdog: Optional["HealthWatchdog"] = None,
    ):
        """
        Initialize the controller.

        Args:
            producer: Async callable ``(prompt, preamble) -> text``
            executor: Async callable ``(action, preamble) -> text``; identity if omitted
            max_iterations: Iteration ceiling per cycle, 0 for unbounded
            completion_promise: Exact phrase that ends the cycle
            mode: Initial gating mode
            step_delay: Seconds to wait before each producer call
            watchdog: Optional health watchdog wrapped around producer calls
        """
        self.producer = producer
        self.executor = executor or passthrough_executor
        self.step_delay = step_delay
        self.watchdog = watchdog
        self.state = LoopState(
            max_iterations=max_iterations,
            completion_promise=completion_promise,
            mode=mode,
        )
        self._interrupted = asyncio.Event()

    @property
    def iteration(self) -> int:
        return self.state.iteration

    @property
    def paused(self) -> bool:
        return self.state.paused

    @property
    def mode(self) -> Mode:
        return self.state.mode

    @mode.setter
    def mode(self, mode: Mode) -> None:
        if mode != self.state.mode:
            logger.info("Mode changed", old=self.state.mode.value, new=mode.value)
        self.state.mode = mode

    def begin_cycle(self) -> None:
        """Reset counters for a new top-level prompt."""
        self.state.reset_cycle()
        # Fresh event so it binds to the loop running this cycle
        self._interrupted = asyncio.Event()
        self.state.transition_to(LoopPhase.IDLE)

    async def run_cycle(self, prompt: str, gate: Optional[Gate] = None) -> Optional[StopReason]:
        """
        Run a full cycle for a new top-level prompt.

        Returns:
            Why the cycle ended, or None if it was abandoned without a reason
        """
        self.begin_cycle()
        await self.step(prompt, gate)
        return self.state.stop_reason

    async def step(self, prompt: str, gate: Optional[Gate] = None) -> None:
        """
        Step ``prompt`` until the cycle completes or is interrupted.

        Continuations are driven iteratively, so a long unbounded cycle does
        not grow the stack.

        Raises:
            LoopAborted: If a step cannot proceed at all (e.g. producer stall)
        """
        next_prompt: Optional[str] = prompt
        while next_prompt is not None:
            if self.state.paused:
                self.state.transition_to(LoopPhase.PAUSED)
                return
            if next_prompt == EXIT_SENTINEL:
                if self.state.stop_reason is None:
                    self.state.stop_reason = StopReason.EXIT_REQUESTED
                await self.on_exit()
                return
            next_prompt = await self._step_once(next_prompt, gate or self._select_gate())

        if not self.state.paused and self.state.phase != LoopPhase.COMPLETED:
            self.state.transition_to(LoopPhase.IDLE)

    def attempt_completion(self, content: Optional[str], original_prompt: str) -> str:
        """
        Decide what to step next.

        Returns:
            EXIT_SENTINEL when the cycle is finished, otherwise ``original_prompt``
        """
        if detect_completion(content, self.state.completion_promise):
            self.state.stop_reason = StopReason.COMPLETION_PROMISE
            logger.info("Completion promise detected", iteration=self.state.iteration)
            return EXIT_SENTINEL

        if not should_continue(self.state.iteration, self.state.max_iterations):
            self.state.stop_reason = StopReason.MAX_ITERATIONS
            logger.info(
                "Max iterations reached",
                iteration=self.state.iteration,
                max=self.state.max_iterations,
            )
            return EXIT_SENTINEL

        return original_prompt

    def interrupt(self) -> None:
        """Pause the loop; the in-flight call is abandoned immediately."""
        self.state.paused = True
        self.state.stop_reason = StopReason.INTERRUPTED
        self._interrupted.set()
        self.state.transition_to(LoopPhase.PAUSED)
        logger.info("Loop interrupted", iteration=self.state.iteration)

    def resume(self) -> None:
        """Clear the pause flag."""
        self.state.paused = False
        self._interrupted.clear()
        if self.state.phase == LoopPhase.PAUSED:
            self.state.transition_to(LoopPhase.IDLE)
        logger.info("Resumed from pause")

    async def on_exit(self) -> None:
        """
        Terminal step.

        Dispatches the sentinel to the producer once so it can wrap up. The
        executor is never called for it and the iteration is not counted.
        """
        preamble = self.render_preamble()
        try:
            result = await self._unless_paused(self._call_producer(EXIT_SENTINEL, preamble))
        except LoopAborted:
            raise
        except Exception as e:
            await self.on_error("producer", e)
        else:
            if result is _ABANDONED:
                return

        self.state.transition_to(LoopPhase.COMPLETED)
        await self.on_stop(self.state.stop_reason)

    async def on_step_started(self, iteration: int, prompt: str) -> None:
        logger.info(
            "Step started",
            iteration=iteration,
            max=self.state.max_iterations,
            mode=self.state.mode.value,
        )

    async def on_action(self, action: str) -> None:
        logger.debug("Producer proposed action", length=len(action))

    async def on_error(self, source: str, error: Exception) -> None:
        logger.error("Step error", source=source, error=str(error), error_type=type(error).__name__)

    async def on_stop(self, reason: Optional[StopReason]) -> None:
        logger.info(
            "Cycle finished",
            reason=reason.value if reason else None,
            iterations=self.state.iteration,
        )

    async def confirm(self, action: str) -> Optional[str]:
        """Confirmation gate. Without a human attached every action is accepted."""
        return action

    def render_preamble(self) -> str:
        return render_preamble(
            self.state.iteration,
            self.state.max_iterations,
            self.state.completion_promise,
        )

    def _select_gate(self) -> Optional[Gate]:
        if self.state.mode == Mode.CONFIRM:
            return self.confirm
        return None

    def _call_producer(self, prompt: str, preamble: str) -> Awaitable[str]:
        call = self.producer(prompt, preamble)
        if self.watchdog is not None:
            return self.watchdog.guard(call)
        return call

    async def _step_once(self, prompt: str, gate: Optional[Gate]) -> Optional[str]:
        """
        Run one iteration.

        Returns:
            The next prompt to step, or None if the step was abandoned
        """
        self.state.iteration += 1
        self.state.transition_to(LoopPhase.RUNNING)
        preamble = self.render_preamble()
        await self.on_step_started(self.state.iteration, prompt)

        if self.step_delay > 0:
            if await self._unless_paused(asyncio.sleep(self.step_delay)) is _ABANDONED:
                return self._abandon("delay")

        try:
            proposed = await self._unless_paused(self._call_producer(prompt, preamble))
        except LoopAborted:
            raise
        except Exception as e:
            await self.on_error("producer", e)
            return self.attempt_completion(_error_content("producer", e), prompt)
        if proposed is _ABANDONED:
            return self._abandon("producer")

        proposed = "" if proposed is None else str(proposed)
        await self.on_action(proposed)

        action: Optional[str] = proposed
        if gate is not None:
            self.state.transition_to(LoopPhase.AWAITING_CONFIRMATION)
            try:
                action = await self._unless_paused(gate(proposed))
            except LoopAborted:
                raise
            except Exception as e:
                await self.on_error("gate", e)
                return self.attempt_completion(_error_content("gate", e), prompt)
            if action is _ABANDONED:
                return self._abandon("gate")
            self.state.transition_to(LoopPhase.RUNNING)

        if action is None:
            logger.info("Action skipped", iteration=self.state.iteration)
            content = ""
        else:
            try:
                result = await self._unless_paused(self.executor(action, preamble))
            except LoopAborted:
                raise
            except Exception as e:
                await self.on_error("executor", e)
                result = _error_content("executor", e)
            if result is _ABANDONED:
                return self._abandon("executor")
            content = "" if result is None else str(result)

        return self.attempt_completion(content, prompt)

    async def _unless_paused(self, awaitable: Awaitable[Any]) -> Any:
        """
        Await ``awaitable`` unless an interrupt arrives first.

        Returns:
            The awaited result, or _ABANDONED if the loop was paused
        """
        if self.state.paused:
            if asyncio.iscoroutine(awaitable):
                awaitable.close()
            return _ABANDONED

        task = asyncio.ensure_future(awaitable)
        waiter = asyncio.ensure_future(self._interrupted.wait())
        try:
            done, _ = await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            task.cancel()
            raise
        finally:
            waiter.cancel()

        if task not in done:
            task.cancel()
            return _ABANDONED
        if self.state.paused:
            # Finished together with the interrupt; discard it either way
            if not task.cancelled():
                task.exception()
            return _ABANDONED
        return task.result()

    def _abandon(self, stage: str) -> None:
        logger.info("Step abandoned", stage=stage, iteration=self.state.iteration)
        self.state.transition_to(LoopPhase.PAUSED)
        return None


def _error_content(source: str, error: Exception) -> str:
    return f"Error: {source} failed: {error}"
