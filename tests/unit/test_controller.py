"""
Tests for the loop controller.
"""

import asyncio
from unittest.mock import AsyncMock

import pytest

from pdca_loop.controller import LoopController, passthrough_executor
from pdca_loop.state import LoopPhase, Mode, StopReason
from pdca_loop.termination import EXIT_SENTINEL
from pdca_loop.watchdog import ProducerStalled


def run_async(coro):
    """Helper to run async functions in sync tests."""
    return asyncio.run(coro)


def echo(action, preamble):
    return action


class TestCompletion:
    """Termination behaviour of full cycles."""

    def test_completion_on_first_iteration(self):
        """Promise on iteration 1 of 3: one executor call, then one terminal dispatch."""
        producer = AsyncMock(return_value="work done\n<promise>PDCA_LOOP_COMPLETED</promise>")
        executor = AsyncMock(side_effect=echo)
        controller = LoopController(producer, executor, max_iterations=3)

        reason = run_async(controller.run_cycle("build it"))

        assert reason == StopReason.COMPLETION_PROMISE
        assert executor.await_count == 1
        assert producer.await_count == 2
        assert producer.await_args_list[0].args[0] == "build it"
        assert producer.await_args_list[1].args[0] == EXIT_SENTINEL
        assert controller.iteration == 1
        assert controller.state.phase == LoopPhase.COMPLETED

    def test_max_iterations(self):
        producer = AsyncMock(return_value="still working")
        executor = AsyncMock(side_effect=echo)
        controller = LoopController(producer, executor, max_iterations=3)

        reason = run_async(controller.run_cycle("task"))

        assert reason == StopReason.MAX_ITERATIONS
        assert executor.await_count == 3
        # three content iterations plus the terminal dispatch
        assert producer.await_count == 4
        for call in producer.await_args_list[:3]:
            assert call.args[0] == "task"

    def test_completion_on_later_iteration(self):
        replies = ["first", "second", "<promise>SHIP</promise>"]
        producer = AsyncMock(side_effect=replies + ["bye"])
        controller = LoopController(producer, max_iterations=10, completion_promise="SHIP")

        reason = run_async(controller.run_cycle("task"))

        assert reason == StopReason.COMPLETION_PROMISE
        assert controller.iteration == 3

    def test_preamble_tracks_iteration(self):
        producer = AsyncMock(return_value="nope")
        controller = LoopController(producer, max_iterations=2, completion_promise="OK")

        run_async(controller.run_cycle("task"))

        first_preamble = producer.await_args_list[0].args[1]
        second_preamble = producer.await_args_list[1].args[1]
        assert "(1 / 2)" in first_preamble
        assert "(2 / 2)" in second_preamble
        assert "<promise>OK</promise>" in first_preamble

    def test_new_cycle_resets_iteration(self):
        producer = AsyncMock(return_value="nope")
        controller = LoopController(producer, max_iterations=2)

        run_async(controller.run_cycle("one"))
        assert controller.iteration == 2
        controller.state.paused = True

        run_async(controller.run_cycle("two"))
        assert controller.iteration == 2
        assert controller.paused is False

    def test_explicit_exit_prompt(self):
        producer = AsyncMock(return_value="bye")
        executor = AsyncMock(side_effect=echo)
        controller = LoopController(producer, executor)

        reason = run_async(controller.run_cycle(EXIT_SENTINEL))

        assert reason == StopReason.EXIT_REQUESTED
        assert producer.await_count == 1
        executor.assert_not_awaited()
        assert controller.iteration == 0


class TestAttemptCompletion:
    """Tests for attempt_completion."""

    def test_returns_original_prompt(self):
        controller = LoopController(AsyncMock(), max_iterations=3)
        controller.state.iteration = 1
        assert controller.attempt_completion("nothing", "orig") == "orig"

    def test_detects_promise(self):
        controller = LoopController(AsyncMock(), max_iterations=3, completion_promise="X")
        controller.state.iteration = 1
        assert controller.attempt_completion("<promise>X</promise>", "orig") == EXIT_SENTINEL
        assert controller.state.stop_reason == StopReason.COMPLETION_PROMISE

    def test_exhausted(self):
        controller = LoopController(AsyncMock(), max_iterations=3)
        controller.state.iteration = 3
        assert controller.attempt_completion("", "orig") == EXIT_SENTINEL
        assert controller.state.stop_reason == StopReason.MAX_ITERATIONS

    def test_unbounded_never_exhausts(self):
        controller = LoopController(AsyncMock(), max_iterations=0)
        controller.state.iteration = 500
        assert controller.attempt_completion("", "orig") == "orig"


class TestErrors:
    """Producer and executor failures become content."""

    def test_executor_error_becomes_content(self):
        producer = AsyncMock(return_value="rm -rf build")
        executor = AsyncMock(side_effect=RuntimeError("boom"))
        controller = LoopController(producer, executor, max_iterations=2)

        reason = run_async(controller.run_cycle("clean"))

        assert reason == StopReason.MAX_ITERATIONS
        assert executor.await_count == 2

    def test_executor_error_can_carry_promise(self):
        producer = AsyncMock(return_value="x")
        executor = AsyncMock(side_effect=RuntimeError("<promise>PDCA_LOOP_COMPLETED</promise>"))
        controller = LoopController(producer, executor, max_iterations=5)

        reason = run_async(controller.run_cycle("task"))

        assert reason == StopReason.COMPLETION_PROMISE
        assert executor.await_count == 1

    def test_producer_error_skips_executor(self):
        producer = AsyncMock(side_effect=[ValueError("bad"), ValueError("bad"), "bye"])
        executor = AsyncMock(side_effect=echo)
        controller = LoopController(producer, executor, max_iterations=2)

        reason = run_async(controller.run_cycle("task"))

        assert reason == StopReason.MAX_ITERATIONS
        executor.assert_not_awaited()

    def test_stall_escapes(self):
        producer = AsyncMock(side_effect=ProducerStalled(3))
        controller = LoopController(producer, max_iterations=2)

        with pytest.raises(ProducerStalled):
            run_async(controller.run_cycle("task"))


class TestGate:
    """Confirmation gate behaviour."""

    def test_gate_edits_action(self):
        producer = AsyncMock(return_value="proposed")
        executor = AsyncMock(return_value="<promise>PDCA_LOOP_COMPLETED</promise>")
        gate = AsyncMock(return_value="edited")
        controller = LoopController(producer, executor, max_iterations=3)

        run_async(controller.run_cycle("task", gate=gate))

        gate.assert_awaited_once_with("proposed")
        assert executor.await_args.args[0] == "edited"

    def test_gate_skip_yields_empty_content(self):
        producer = AsyncMock(return_value="<promise>PDCA_LOOP_COMPLETED</promise>")
        executor = AsyncMock(side_effect=echo)
        gate = AsyncMock(return_value=None)
        controller = LoopController(producer, executor, max_iterations=2)

        reason = run_async(controller.run_cycle("task", gate=gate))

        # the skipped action's text is never inspected
        assert reason == StopReason.MAX_ITERATIONS
        executor.assert_not_awaited()
        assert gate.await_count == 2

    def test_confirm_mode_uses_confirm(self):
        producer = AsyncMock(return_value="<promise>PDCA_LOOP_COMPLETED</promise>")
        controller = LoopController(producer, mode=Mode.CONFIRM)
        controller.confirm = AsyncMock(side_effect=lambda action: action)

        run_async(controller.run_cycle("task"))

        controller.confirm.assert_awaited_once()


class TestInterrupt:
    """Interrupt and resume."""

    def test_interrupt_abandons_producer_call(self):
        release = asyncio.Event()
        executor = AsyncMock(side_effect=echo)

        async def slow_producer(prompt, preamble):
            await release.wait()
            return "<promise>PDCA_LOOP_COMPLETED</promise>"

        controller = LoopController(slow_producer, executor, max_iterations=3)

        async def scenario():
            task = asyncio.ensure_future(controller.run_cycle("task"))
            await asyncio.sleep(0.01)
            controller.interrupt()
            reason = await asyncio.wait_for(task, timeout=1)
            release.set()
            await asyncio.sleep(0)
            return reason

        reason = run_async(scenario())

        assert reason == StopReason.INTERRUPTED
        assert controller.paused is True
        assert controller.state.phase == LoopPhase.PAUSED
        executor.assert_not_awaited()

    def test_paused_controller_does_not_step(self):
        producer = AsyncMock(return_value="x")
        controller = LoopController(producer)
        controller.interrupt()

        run_async(controller.step("task"))

        producer.assert_not_awaited()

    def test_resume_clears_pause(self):
        controller = LoopController(AsyncMock())
        controller.interrupt()
        controller.resume()
        assert controller.paused is False
        assert controller.state.phase == LoopPhase.IDLE


def test_passthrough_executor():
    assert run_async(passthrough_executor("ls", "preamble")) == "ls"


def test_step_delay_is_applied():
    producer = AsyncMock(return_value="<promise>PDCA_LOOP_COMPLETED</promise>")
    controller = LoopController(producer, step_delay=0.01)

    async def timed():
        loop = asyncio.get_running_loop()
        start = loop.time()
        await controller.run_cycle("task")
        return loop.time() - start

    assert run_async(timed()) >= 0.01
