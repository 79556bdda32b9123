"""
CLI interface using Click.
"""

import asyncio
import sys
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

import click
from pydantic import ValidationError
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from pdca_loop import __version__
from pdca_loop.config import (
    AppConfig,
    ConfigurationError,
    load_config,
    load_task_file,
    merge_overrides,
    save_config,
)
from pdca_loop.context import RunContext, read_last_session
from pdca_loop.executors import build_executor
from pdca_loop.logging import bind_session, get_logger, setup_logging
from pdca_loop.persisted.hook import HookDecision, PersistedLoopHook
from pdca_loop.persisted.record import CorruptRecordError, RecordStore
from pdca_loop.persisted.settings import HookSettings
from pdca_loop.producers import build_producer
from pdca_loop.shell import InteractiveShell
from pdca_loop.state import Mode
from pdca_loop.watchdog import HealthWatchdog

console = Console()
logger = get_logger(__name__)

TASK_FILE_SUFFIXES = (".yaml", ".yml")


@click.group(invoke_without_command=True)
@click.option("--version", is_flag=True, help="Show version and exit")
@click.option("-v", "--verbose", is_flag=True, help="Enable verbose output")
@click.pass_context
def main(ctx: click.Context, version: bool, verbose: bool) -> None:
    """PDCA Loop - bounded Plan-Do-Check-Act iteration around an AI agent."""
    ctx.ensure_object(dict)
    ctx.obj["verbose"] = verbose

    if version:
        console.print(f"pdca-loop v{__version__}")
        sys.exit(0)

    if ctx.invoked_subcommand is None:
        console.print(ctx.get_help())


def _resolve_task(task: Tuple[str, ...], prompt: Optional[str]) -> Tuple[Optional[str], Optional[str]]:
    """
    Split the positional arguments into a task file path or prompt words.

    Returns:
        (task_file, prompt)
    """
    if len(task) == 1 and task[0].endswith(TASK_FILE_SUFFIXES) and Path(task[0]).is_file():
        return task[0], prompt
    words = " ".join(task).strip()
    return None, prompt or words or None


@main.command()
@click.argument("task", nargs=-1)
@click.option("--prompt", "-p", help="Initial prompt")
@click.option("--append", "-a", help="Text appended to the initial prompt")
@click.option("--config", "-c", type=click.Path(), help="Path to config file")
@click.option("--model", help="Producer model")
@click.option("--think", type=click.Choice(["low", "medium", "high", "xhigh"]), help="Reasoning effort")
@click.option("--max", "max_iterations", type=click.IntRange(min=0), help="Max iterations per cycle (0 = unbounded)")
@click.option("--promise", help="Completion phrase")
@click.option("--timeout", type=click.FloatRange(min=0, min_open=True), help="Producer call timeout in seconds")
@click.option("--persona", help="Persona the producer should adopt")
@click.option("--producer", type=click.Choice(["gemini", "command"]), help="Producer backend")
@click.option("--executor", type=click.Choice(["passthrough", "shell"]), help="Executor backend")
@click.option("--debug", is_flag=True, help="Start in confirm mode")
@click.option(
    "--resume", "-r",
    is_flag=False, flag_value="", default=None,
    help="Resume a session (the last one when no ID is given; starts in confirm mode)",
)
@click.pass_context
def run(
    ctx: click.Context,
    task: Tuple[str, ...],
    prompt: Optional[str],
    append: Optional[str],
    config: Optional[str],
    model: Optional[str],
    think: Optional[str],
    max_iterations: Optional[int],
    promise: Optional[str],
    timeout: Optional[float],
    persona: Optional[str],
    producer: Optional[str],
    executor: Optional[str],
    debug: bool,
    resume: Optional[str],
) -> None:
    """Start the interactive loop. TASK is a YAML task file or prompt words."""
    verbose = ctx.obj.get("verbose", False)

    try:
        app_config = load_config(config)
        task_file, initial_prompt = _resolve_task(task, prompt)
        if task_file:
            task_spec = load_task_file(task_file)
            app_config = task_spec.apply_to(app_config)
            initial_prompt = prompt or task_spec.prompt

        overrides: Dict[str, Any] = {"loop": {}, "producer": {}, "executor": {}}
        if model:
            overrides["producer"]["model"] = model
        if think:
            overrides["producer"]["reasoning_effort"] = think
        if timeout:
            overrides["producer"]["timeout_seconds"] = timeout
        if persona:
            overrides["producer"]["persona"] = persona
        if producer:
            overrides["producer"]["kind"] = producer
        if executor:
            overrides["executor"]["kind"] = executor
        if max_iterations is not None:
            overrides["loop"]["max_iterations"] = max_iterations
        if promise:
            overrides["loop"]["completion_promise"] = promise
        if debug or resume == "":
            overrides["loop"]["mode"] = "confirm"
        app_config = merge_overrides(app_config, overrides)

        if initial_prompt and append:
            initial_prompt = f"{initial_prompt}\n\n{append}"

        context = RunContext.create(app_config.storage_path, resume=resume)
        setup_logging(level="DEBUG" if verbose else "INFO", log_file=context.log_file, console=verbose)
        bind_session(context.session_id)

        loop_producer = build_producer(app_config, context)
        loop_executor = build_executor(app_config, context)
    except ConfigurationError as e:
        console.print(f"[red]{e}[/red]")
        sys.exit(1)

    shell = build_shell(app_config, loop_producer, loop_executor)

    logger.info(
        "Starting interactive loop",
        resumed=context.resumed,
        producer=app_config.producer.kind,
        executor=app_config.executor.kind,
        mode=shell.mode.value,
    )
    console.print(Panel(
        f"Session: [cyan]{context.session_id}[/cyan]{' (resumed)' if context.resumed else ''}\n"
        f"Mode: {shell.mode.value}  Max iterations: {app_config.loop.max_iterations or '∞'}\n"
        f"Promise: {app_config.loop.completion_promise}\n"
        f"[dim]/h for help, /q to quit[/dim]",
        title=f"pdca-loop v{__version__}",
        border_style="blue",
    ))

    exit_code = asyncio.run(shell.run(initial_prompt))
    sys.exit(exit_code)


def build_shell(app_config: AppConfig, producer, executor) -> InteractiveShell:
    """Wire an InteractiveShell from configuration."""
    watchdog = None
    probe = getattr(producer, "ping", None)
    if app_config.watchdog.enabled and probe is not None:
        watchdog = HealthWatchdog.from_config(app_config.watchdog, probe)

    return InteractiveShell(
        producer,
        executor,
        max_iterations=app_config.loop.max_iterations,
        completion_promise=app_config.loop.completion_promise,
        mode=Mode(app_config.loop.mode),
        step_delay=app_config.loop.step_delay_seconds,
        resume_delay=app_config.loop.resume_delay_seconds,
        watchdog=watchdog,
    )


@main.command()
@click.option("--config", "-c", type=click.Path(), help="Where to write the config file")
@click.option("--force", is_flag=True, help="Overwrite an existing file")
def init(config: Optional[str], force: bool) -> None:
    """Write a default config file."""
    app_config = AppConfig()
    target = Path(config).expanduser() if config else None
    if target is not None and target.exists() and not force:
        console.print(f"[yellow]Config already exists: {target}[/yellow] (use --force to overwrite)")
        return
    path = save_config(app_config, str(target) if target else None)
    console.print(f"[green]Wrote default config to {path}[/green]")


@main.group()
def hook() -> None:
    """Entry points for host agent hooks (payload JSON on stdin)."""


def _run_hook(event: str) -> None:
    """Handle one hook event. Always exits 0 so bad input never breaks the host."""
    try:
        settings = HookSettings()
    except ValidationError as e:
        click.echo(f"pdca-loop: invalid hook settings: {e}", err=True)
        return

    setup_logging(level="INFO", log_file=settings.log_file, console=False)
    raw = click.get_text_stream("stdin").read()

    try:
        decision = PersistedLoopHook(settings).handle(event, raw)
    except Exception:
        # Fail open: the agent is allowed to continue or stop as it wanted
        logger.exception("Hook failed", hook_event=event)
        decision = HookDecision.allow()

    output = decision.to_json()
    if output:
        click.echo(output)


@hook.command("start")
def hook_start() -> None:
    """Tool invocation: start a persisted loop."""
    _run_hook("start")


@hook.command("prompt")
def hook_prompt() -> None:
    """Prompt submission: replace the stored prompt."""
    _run_hook("prompt")


@hook.command("stop")
def hook_stop() -> None:
    """Exit attempt: allow it or block and continue the loop."""
    _run_hook("stop")


def _store(state_file: Optional[str]) -> RecordStore:
    path = Path(state_file) if state_file else HookSettings().state_file
    return RecordStore(path.expanduser())


@main.command()
@click.option("--state-file", type=click.Path(), help="Record file (default from PDCA_LOOP_HOOK_STATE_FILE)")
@click.option("--config", "-c", type=click.Path(), help="Path to config file")
def status(state_file: Optional[str], config: Optional[str]) -> None:
    """Show the active persisted loop."""
    store = _store(state_file)

    try:
        record = store.load()
    except CorruptRecordError as e:
        console.print(f"[red]Record at {store.path} is corrupt:[/red] {e}")
        console.print("Use 'pdca-loop cancel' to remove it.")
        sys.exit(1)

    try:
        last_session = read_last_session(load_config(config).storage_path)
    except ConfigurationError:
        last_session = None

    if record is None:
        console.print("[dim]No active persisted loop.[/dim]")
        if last_session:
            console.print(f"Last interactive session: [cyan]{last_session}[/cyan]")
        return

    prompt_preview = record.prompt if len(record.prompt) <= 60 else record.prompt[:60] + "..."

    table = Table(title="Active PDCA loop", show_header=False)
    table.add_column("Key", style="dim")
    table.add_column("Value")
    table.add_row("Record", str(store.path))
    table.add_row("Iteration", f"[bold]{record.iteration}[/bold]/{record.max_iterations or '∞'}")
    table.add_row("Promise", record.completion_promise or "-")
    table.add_row("Prompt", prompt_preview)
    if last_session:
        table.add_row("Last session", last_session)
    console.print(table)


@main.command()
@click.option("--state-file", type=click.Path(), help="Record file (default from PDCA_LOOP_HOOK_STATE_FILE)")
def cancel(state_file: Optional[str]) -> None:
    """Cancel the active persisted loop."""
    store = _store(state_file)
    try:
        record = store.load()
    except CorruptRecordError:
        record = None

    if not store.delete():
        console.print("[yellow]No active persisted loop.[/yellow]")
        return

    if record is not None:
        console.print(f"[green]Cancelled PDCA loop[/green] (was at iteration {record.iteration})")
    else:
        console.print("[green]Removed loop record.[/green]")


if __name__ == "__main__":
    main()
