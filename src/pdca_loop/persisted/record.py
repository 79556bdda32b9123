"""
File-backed loop record.

The record is a small markdown file: a ``---`` delimited header of
``key: value`` lines followed by one blank line and the task prompt,
kept verbatim. The file exists exactly while a persisted loop is active.
"""

import json
import os
import shutil
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional

from filelock import FileLock

from pdca_loop.logging import get_logger

logger = get_logger(__name__)

DELIMITER = "---"


class CorruptRecordError(ValueError):
    """Raised when a record's header cannot be parsed."""


@dataclass
class LoopRecord:
    """Persisted loop counters plus the task prompt."""

    iteration: int
    max_iterations: int
    completion_promise: Optional[str]
    prompt: str
    header_lines: List[str] = field(default_factory=list)

    def header(self) -> List[str]:
        """Header lines to write, reusing the parsed ones where present."""
        if not self.header_lines:
            return [
                f"iteration: {self.iteration}",
                f"max_iterations: {self.max_iterations}",
                f"completion_promise: {_quote(self.completion_promise)}",
            ]

        lines = []
        for line in self.header_lines:
            if _key_of(line) == "iteration":
                lines.append(f"iteration: {self.iteration}")
            else:
                lines.append(line)
        return lines


def _quote(value: Optional[str]) -> str:
    if value is None:
        return "null"
    return json.dumps(value)


def _unquote(raw: str) -> Optional[str]:
    value = raw.strip()
    if value in ("", "null", "~"):
        return None
    if value.startswith('"') and value.endswith('"') and len(value) >= 2:
        try:
            return json.loads(value)
        except json.JSONDecodeError:
            return value[1:-1]
    if value.startswith("'") and value.endswith("'") and len(value) >= 2:
        return value[1:-1]
    return value


def _key_of(line: str) -> Optional[str]:
    key, sep, _ = line.partition(":")
    if not sep:
        return None
    return key.strip()


def _parse_int(fields: dict, key: str, default: Optional[int] = None) -> int:
    raw = fields.get(key)
    if raw is None or raw == "":
        if default is None:
            raise CorruptRecordError(f"missing '{key}' in record header")
        return default
    try:
        return int(raw)
    except ValueError:
        raise CorruptRecordError(f"'{key}' is not an integer: {raw!r}")


def parse_record(text: str) -> LoopRecord:
    """
    Parse record text.

    Raises:
        CorruptRecordError: If the header is missing or its counters are not integers
    """
    lines = text.split("\n")
    if not lines or lines[0].strip() != DELIMITER:
        raise CorruptRecordError("record does not start with a header delimiter")

    try:
        end = next(i for i in range(1, len(lines)) if lines[i].strip() == DELIMITER)
    except StopIteration:
        raise CorruptRecordError("record header is not closed")

    header_lines = lines[1:end]
    fields = {}
    for line in header_lines:
        key = _key_of(line)
        if key:
            fields[key] = line.partition(":")[2].strip()

    body = lines[end + 1:]
    if body and body[0] == "":
        body = body[1:]
    prompt = "\n".join(body)
    if prompt.endswith("\n"):
        prompt = prompt[:-1]

    return LoopRecord(
        iteration=_parse_int(fields, "iteration"),
        max_iterations=_parse_int(fields, "max_iterations", default=0),
        completion_promise=_unquote(fields.get("completion_promise", "")),
        prompt=prompt,
        header_lines=header_lines,
    )


def render_record(record: LoopRecord) -> str:
    """Render a record to text."""
    return "\n".join([DELIMITER, *record.header(), DELIMITER, "", record.prompt]) + "\n"


class RecordStore:
    """
    Reads and writes the record file.

    Writes go to a temporary file in the same directory and are moved into
    place while holding a file lock, so readers never see a partial record.
    """

    LOCK_TIMEOUT = 10.0

    def __init__(self, path: Path):
        self.path = Path(path)
        self.lock_path = self.path.with_name(self.path.name + ".lock")

    def exists(self) -> bool:
        return self.path.is_file()

    def read_text(self) -> Optional[str]:
        try:
            return self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None

    def load(self) -> Optional[LoopRecord]:
        """
        Load the record.

        Returns:
            The record, or None if no loop is active

        Raises:
            CorruptRecordError: If the record cannot be parsed
        """
        text = self.read_text()
        if text is None:
            return None
        return parse_record(text)

    def create(self, record: LoopRecord) -> bool:
        """
        Write ``record`` unless one already exists.

        Returns:
            True if the record was created
        """
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with FileLock(str(self.lock_path), timeout=self.LOCK_TIMEOUT):
            if self.exists():
                logger.info("Record already exists, not replacing", path=str(self.path))
                return False
            self._atomic_write(render_record(record))
        logger.info(
            "Record created",
            path=str(self.path),
            max_iterations=record.max_iterations,
        )
        return True

    def save(self, record: LoopRecord) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with FileLock(str(self.lock_path), timeout=self.LOCK_TIMEOUT):
            self._atomic_write(render_record(record))
        logger.debug("Record saved", iteration=record.iteration)

    def delete(self) -> bool:
        """
        Delete the record. Deleting a missing record is not an error.

        Returns:
            True if a file was removed
        """
        try:
            self.path.unlink()
        except FileNotFoundError:
            return False
        logger.info("Record deleted", path=str(self.path))
        return True

    def _atomic_write(self, text: str) -> None:
        fd, temp_path = tempfile.mkstemp(
            suffix=".md",
            prefix=".record_",
            dir=str(self.path.parent),
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(text)
            shutil.move(temp_path, self.path)
        except Exception:
            if os.path.exists(temp_path):
                os.unlink(temp_path)
            raise
