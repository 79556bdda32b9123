"""
PersistedLoopHook - the loop as a series of short-lived hook invocations.

The host agent runs one hook process per lifecycle event. The loop's state
lives in the record file between invocations:

- tool invocation creates the record (iteration 1)
- prompt submission replaces the stored prompt
- an attempted exit either lets the agent stop (deleting the record) or
  blocks the exit and feeds the stored prompt back in
"""

import json
from dataclasses import dataclass
from typing import Any, Dict, Optional

from pdca_loop.logging import get_logger
from pdca_loop.persisted.events import EventPayload
from pdca_loop.persisted.record import CorruptRecordError, LoopRecord, RecordStore
from pdca_loop.persisted.settings import HookSettings
from pdca_loop.persisted.transcript import last_record_text
from pdca_loop.prompts import render_continuation
from pdca_loop.termination import last_promise, should_continue

logger = get_logger(__name__)


@dataclass
class HookDecision:
    """What the hook prints back to the host. Empty means allow silently."""

    decision: Optional[str] = None
    reason: Optional[str] = None
    system_message: Optional[str] = None

    @classmethod
    def allow(cls, system_message: Optional[str] = None) -> "HookDecision":
        return cls(system_message=system_message)

    @classmethod
    def block(cls, reason: str, system_message: Optional[str] = None) -> "HookDecision":
        return cls(decision="block", reason=reason, system_message=system_message)

    @property
    def blocks(self) -> bool:
        return self.decision == "block"

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {}
        if self.decision:
            data["decision"] = self.decision
        if self.reason is not None:
            data["reason"] = self.reason
        if self.system_message:
            data["systemMessage"] = self.system_message
        return data

    def to_json(self) -> str:
        data = self.to_dict()
        return json.dumps(data) if data else ""


class PersistedLoopHook:
    """Handlers for the three hook events."""

    def __init__(
        self,
        settings: Optional[HookSettings] = None,
        store: Optional[RecordStore] = None,
    ):
        self.settings = settings or HookSettings()
        self.store = store or RecordStore(self.settings.state_file.expanduser())

    def payload(self, raw: str) -> EventPayload:
        return EventPayload.from_raw(raw, max_field_length=self.settings.max_field_length)

    def on_tool_invocation(self, payload: EventPayload) -> HookDecision:
        """
        Start a loop.

        Does nothing when the prompt is empty or a loop is already active.
        """
        prompt = payload.get_str("prompt")
        if not prompt or not prompt.strip():
            logger.info("No prompt in tool invocation, not starting a loop")
            return HookDecision.allow()

        promise = (payload.get_str("completion_promise") or "").strip()
        record = LoopRecord(
            iteration=1,
            max_iterations=payload.get_int("max_iterations", self.settings.default_max_iterations),
            completion_promise=promise or self.settings.default_completion_promise,
            prompt=prompt,
        )
        if not self.store.create(record):
            return HookDecision.allow()

        return HookDecision.allow(
            system_message=(
                f"PDCA loop started (max iterations: {_limit(record.max_iterations)}). "
                f"To finish, output <promise>{record.completion_promise}</promise> "
                "as your final line, only when it is true."
            )
        )

    def on_prompt_submit(self, payload: EventPayload) -> HookDecision:
        """Replace the stored prompt, keeping the header as it is."""
        prompt = payload.get_str("prompt")
        if not prompt or not prompt.strip():
            return HookDecision.allow()

        try:
            record = self.store.load()
        except CorruptRecordError as e:
            # Left for the exit handler, which deletes corrupt records
            logger.warning("Record is corrupt, prompt not updated", error=str(e))
            return HookDecision.allow()
        if record is None:
            return HookDecision.allow()

        record.prompt = prompt
        self.store.save(record)
        logger.info("Record prompt updated", iteration=record.iteration)
        return HookDecision.allow()

    def on_stop(self, payload: EventPayload) -> HookDecision:
        """
        Decide whether the agent may stop.

        Returns:
            An allow decision (record deleted) or a block decision carrying
            the stored prompt for the next iteration
        """
        try:
            record = self.store.load()
        except CorruptRecordError as e:
            logger.warning("Record is corrupt, deleting it", error=str(e))
            self.store.delete()
            return HookDecision.allow()

        if record is None:
            return HookDecision.allow()

        if not should_continue(record.iteration, record.max_iterations):
            logger.info("Max iterations reached", iteration=record.iteration, max=record.max_iterations)
            self.store.delete()
            return HookDecision.allow()

        promise = record.completion_promise or self.settings.default_completion_promise
        if record.iteration > self.settings.grace_iterations:
            text = last_record_text(payload.get_str("transcript_path"))
            if last_promise(text) == promise:
                logger.info("Completion promise found", iteration=record.iteration)
                self.store.delete()
                return HookDecision.allow()

        record.iteration += 1
        self.store.save(record)
        logger.info("Exit blocked", iteration=record.iteration, max=record.max_iterations)

        return HookDecision.block(
            reason=render_continuation(record.prompt, record.iteration, record.max_iterations, promise),
            system_message=(
                f"PDCA iteration {record.iteration}/{_limit(record.max_iterations)} | "
                f"To stop: output <promise>{promise}</promise> (only when true)"
            ),
        )

    def handle(self, event: str, raw: str) -> HookDecision:
        """Dispatch a raw payload by event name (``start``, ``prompt``, ``stop``)."""
        handlers = {
            "start": self.on_tool_invocation,
            "prompt": self.on_prompt_submit,
            "stop": self.on_stop,
        }
        try:
            handler = handlers[event]
        except KeyError:
            raise ValueError(f"Unknown hook event: {event}")
        return handler(self.payload(raw))


def _limit(max_iterations: int) -> str:
    return str(max_iterations) if max_iterations > 0 else "unlimited"
