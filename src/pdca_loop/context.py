"""
Per-run context shared explicitly by every collaborator.
"""

import random
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from pdca_loop.logging import get_logger
from pdca_loop.state import utc_now_iso

logger = get_logger(__name__)

LAST_SESSION_FILE = "last-session"


def new_session_id() -> str:
    """
    Build a time-ordered session id.

    Millisecond timestamp shifted left by 10 bits, with 10 random bits in
    the low end.
    """
    millis = int(time.time() * 1000)
    return str((millis << 10) | random.getrandbits(10))


@dataclass
class RunContext:
    """Identity and storage location of one interactive run."""

    session_id: str
    storage_path: Path
    started_at: str = field(default_factory=utc_now_iso)
    resumed: bool = False

    @classmethod
    def create(cls, storage_path: Path, resume: Optional[str] = None) -> "RunContext":
        """
        Create a context, optionally resuming an earlier session.

        Args:
            storage_path: Base directory for logs and the last-session file
            resume: ``None`` for a fresh session, ``""`` to reuse the last
                session, or an explicit session id
        """
        storage_path.mkdir(parents=True, exist_ok=True)
        session_id: Optional[str] = None
        resumed = False

        if resume is not None:
            session_id = resume.strip() or read_last_session(storage_path)
            if session_id:
                resumed = True
            else:
                logger.warning("No previous session to resume, starting a new one")

        context = cls(
            session_id=session_id or new_session_id(),
            storage_path=storage_path,
            resumed=resumed,
        )
        write_last_session(storage_path, context.session_id)
        return context

    @property
    def logs_path(self) -> Path:
        return self.storage_path / "logs"

    @property
    def log_file(self) -> Path:
        return self.logs_path / f"{self.session_id}.log"


def read_last_session(storage_path: Path) -> Optional[str]:
    """Return the id recorded by the previous run, if any."""
    path = storage_path / LAST_SESSION_FILE
    try:
        value = path.read_text(encoding="utf-8").strip()
    except FileNotFoundError:
        return None
    return value or None


def write_last_session(storage_path: Path, session_id: str) -> None:
    path = storage_path / LAST_SESSION_FILE
    path.write_text(session_id + "\n", encoding="utf-8")
