"""
Termination rules shared by the in-process controller and the exit hook.

Both realizations of the loop import these functions, so the iteration
ceiling and the completion-phrase check cannot drift apart.
"""

import re
from typing import Optional


DEFAULT_COMPLETION_PROMISE = "PDCA_LOOP_COMPLETED"
DEFAULT_MAX_ITERATIONS = 3

# Reserved prompt that closes the loop down instead of being worked on
EXIT_SENTINEL = "exit"

# Only the tail of the output is inspected for the completion marker
PROMISE_LINES = 10

PROMISE_PATTERN = re.compile(r"<promise>([^<]*)</promise>")


def extract_promise(line: str) -> Optional[str]:
    """
    Extract the first ``<promise>...</promise>`` value from a single line.

    Returns:
        The trimmed value, or None when there is no marker or it is blank
    """
    if not line:
        return None
    match = PROMISE_PATTERN.search(line)
    if not match:
        return None
    value = match.group(1).strip()
    return value or None


def detect_completion(text: Optional[str], promise: str) -> bool:
    """
    Decide whether ``text`` carries the exact completion phrase.

    Scans the last PROMISE_LINES lines from the end toward the start and
    returns True on the first marker whose trimmed value equals ``promise``
    (case-sensitive).

    Args:
        text: Output to inspect (may be empty or None)
        promise: Configured completion phrase
    """
    if not text or not text.strip():
        return False

    lines = text.split("\n")[-PROMISE_LINES:]
    for line in reversed(lines):
        candidate = extract_promise(line)
        if candidate is not None and candidate == promise:
            return True
    return False


def last_promise(text: Optional[str]) -> Optional[str]:
    """
    Return the trimmed value of the last promise marker in a block of text.

    Used on a transcript record. Markers are matched one line at a time and
    the value is trimmed like ``extract_promise``; inner whitespace is kept.
    """
    if not text:
        return None
    for line in reversed(text.split("\n")):
        matches = PROMISE_PATTERN.findall(line)
        if matches:
            value = matches[-1].strip()
            return value or None
    return None


def should_continue(iteration: int, max_iterations: int) -> bool:
    """
    Iteration ceiling check.

    A ``max_iterations`` of 0 (or below) means unbounded: the loop only ends
    on completion or an external stop.
    """
    if max_iterations <= 0:
        return True
    return iteration < max_iterations
