"""
Reading the agent's transcript.
"""

import json
from pathlib import Path
from typing import Any, List, Optional

from pdca_loop.logging import get_logger

logger = get_logger(__name__)


def _last_line(path: Path) -> Optional[str]:
    last = None
    with open(path, "r", encoding="utf-8", errors="replace") as f:
        for line in f:
            if line.strip():
                last = line
    return last.rstrip("\n") if last is not None else None


def _collect_text(node: Any, out: List[str]) -> None:
    if isinstance(node, dict):
        text = node.get("text")
        if isinstance(text, str):
            out.append(text)
        for key, value in node.items():
            if key != "text":
                _collect_text(value, out)
    elif isinstance(node, list):
        for item in node:
            _collect_text(item, out)


def last_record_text(transcript_path: Optional[str]) -> Optional[str]:
    """
    Text of the last record in a JSON-lines transcript.

    The record's ``text`` fields are joined with newlines. A last line that
    is not JSON is returned as-is.

    Returns:
        The text, or None if the transcript is missing or unreadable
    """
    if not transcript_path:
        return None
    path = Path(transcript_path).expanduser()
    try:
        line = _last_line(path)
    except OSError as e:
        logger.warning("Transcript not readable", path=str(path), error=str(e))
        return None
    if line is None:
        return None

    try:
        record = json.loads(line)
    except json.JSONDecodeError:
        return line

    texts: List[str] = []
    _collect_text(record, texts)
    if not texts:
        return None
    return "\n".join(texts)
