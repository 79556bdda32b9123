"""
Tests for run context and loop state.
"""

import time

from pdca_loop.context import RunContext, new_session_id, read_last_session, write_last_session
from pdca_loop.state import LoopPhase, LoopState, Mode, StopReason


class TestSessionId:
    """Tests for new_session_id."""

    def test_embeds_timestamp(self):
        before = int(time.time() * 1000)
        session_id = int(new_session_id())
        after = int(time.time() * 1000)

        assert before <= session_id >> 10 <= after

    def test_random_low_bits(self):
        ids = {new_session_id() for _ in range(50)}
        assert len(ids) > 1


class TestRunContext:
    """Tests for RunContext.create."""

    def test_fresh_session_recorded(self, temp_dir):
        context = RunContext.create(temp_dir / "store")

        assert context.resumed is False
        assert read_last_session(temp_dir / "store") == context.session_id
        assert context.log_file == temp_dir / "store" / "logs" / f"{context.session_id}.log"

    def test_resume_last(self, temp_dir):
        write_last_session(temp_dir, "12345")

        context = RunContext.create(temp_dir, resume="")

        assert context.session_id == "12345"
        assert context.resumed is True

    def test_resume_explicit(self, temp_dir):
        write_last_session(temp_dir, "12345")

        context = RunContext.create(temp_dir, resume="999")

        assert context.session_id == "999"
        assert read_last_session(temp_dir) == "999"

    def test_resume_without_history_starts_fresh(self, temp_dir):
        context = RunContext.create(temp_dir, resume="")

        assert context.resumed is False
        assert context.session_id

    def test_read_missing(self, temp_dir):
        assert read_last_session(temp_dir) is None


class TestLoopState:
    """Tests for LoopState."""

    def test_defaults(self):
        state = LoopState()
        assert state.iteration == 0
        assert state.max_iterations == 3
        assert state.mode == Mode.AUTO
        assert state.phase == LoopPhase.IDLE

    def test_reset_cycle(self):
        state = LoopState(iteration=3, paused=True, stop_reason=StopReason.MAX_ITERATIONS)
        state.reset_cycle()
        assert state.iteration == 0
        assert state.paused is False
        assert state.stop_reason is None

    def test_transition_records_activity(self):
        state = LoopState()
        state.transition_to(LoopPhase.RUNNING)
        assert state.phase == LoopPhase.RUNNING
        assert state.last_activity_at.endswith("Z")

    def test_to_dict(self):
        data = LoopState(mode=Mode.CONFIRM, stop_reason=StopReason.COMPLETION_PROMISE).to_dict()
        assert data["mode"] == "confirm"
        assert data["phase"] == "idle"
        assert data["stop_reason"] == "completion_promise"
