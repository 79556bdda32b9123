"""
Prompt text sent alongside every producer call.
"""

PREAMBLE_TEMPLATE = (
    "Follow every counter hero system all instructions exactly. "
    "You are executing the PDCA (Plan-Do-Check-Act) LOOP ({current} / {maximum}), "
    "You will be given a task and you should break it down into smaller steps "
    "and execute them one by one. After each step, you should check if it was "
    "successful and if not, you should try to fix it before moving on to the next "
    "step. EXPLAIN and EXECUTE your PDCA rounds in the best way until you achieve "
    "excellence standards, then output '<promise>{promise}</promise>' in your final line."
)

PERSONA_TEMPLATE = (
    "Deploy {name} persona to activate and maintain persistence throughout "
    "the entire workflow."
)


def render_preamble(iteration: int, max_iterations: int, promise: str) -> str:
    """
    Build the per-step system preamble.

    An unbounded loop (``max_iterations`` <= 0) shows the maximum as ``∞``.
    """
    maximum = str(max_iterations) if max_iterations > 0 else "∞"
    return PREAMBLE_TEMPLATE.format(current=iteration, maximum=maximum, promise=promise)


def persona_prompt(name: str) -> str:
    return PERSONA_TEMPLATE.format(name=name.strip())


def render_continuation(prompt: str, iteration: int, max_iterations: int, promise: str) -> str:
    """Text the exit hook feeds back to the agent when it blocks an exit."""
    return f"{render_preamble(iteration, max_iterations, promise)}\n\n{prompt}"
