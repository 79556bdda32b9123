"""
Interactive shell around the loop controller, using Rich for output.

Reads prompts line by line, dispatches slash-commands, gates actions in
Confirm mode, and maps Ctrl+C onto the controller's interrupt contract.
"""

import asyncio
import signal
from typing import Callable, Optional, Protocol

from rich.console import Console
from rich.panel import Panel
from rich.text import Text

from pdca_loop.controller import LoopAborted, LoopController
from pdca_loop.logging import get_logger
from pdca_loop.state import LoopPhase, Mode, StopReason
from pdca_loop.watchdog import ProducerStalled

logger = get_logger(__name__)


HELP_TEXT = """\
[bold]Commands[/bold]
  /h  show this help
  /a  auto mode: actions run without confirmation
  /c  confirm mode: every action needs Y/n/e
  /q  quit
Any other line starts a new cycle. Type 'exit' to quit."""


class InputClosed(LoopAborted):
    """The input stream reached end of file."""


class LineReader(Protocol):
    async def readline(self, prompt: str) -> str: ...

    def close(self) -> None: ...


class ConsoleLineReader:
    """
    Line reader backed by a blocking read in a worker thread.

    At most one read is outstanding. If the caller stops waiting for it
    (an interrupt abandoned the confirm gate), the next ``readline`` picks
    up the same read instead of starting a competing one.
    """

    def __init__(self, console: Console, stream=None):
        self.console = console
        self.stream = stream
        self.closed = False
        self._pending: Optional[asyncio.Future] = None

    def _read(self, prompt: str) -> str:
        if self.stream is None:
            return self.console.input(Text(prompt))
        self.console.print(prompt, end="", markup=False, highlight=False)
        line = self.stream.readline()
        if not line:
            raise EOFError
        return line.rstrip("\n")

    async def readline(self, prompt: str) -> str:
        if self.closed:
            raise InputClosed()
        if self._pending is None:
            loop = asyncio.get_running_loop()
            self._pending = loop.run_in_executor(None, self._read, prompt)
        else:
            # The outstanding read showed an older prompt
            self.console.print()
            self.console.print(prompt, end="", markup=False, highlight=False)
        try:
            line = await asyncio.shield(self._pending)
        except EOFError:
            self._pending = None
            raise InputClosed()
        self._pending = None
        return line

    def close(self) -> None:
        self.closed = True
        if self.stream is not None:
            self.stream.close()


def tty_reader_factory(console: Console) -> Callable[[], LineReader]:
    """Factory that reopens the controlling terminal after stdin hits EOF."""

    def factory() -> LineReader:
        return ConsoleLineReader(console, stream=open("/dev/tty", "r", encoding="utf-8"))

    return factory


class InteractiveShell(LoopController):
    """Line-oriented front end for a LoopController."""

    def __init__(
        self,
        producer,
        executor=None,
        console: Optional[Console] = None,
        error_console: Optional[Console] = None,
        reader: Optional[LineReader] = None,
        reader_factory: Optional[Callable[[], LineReader]] = None,
        resume_delay: float = 1.0,
        install_signal_handlers: bool = True,
        **kwargs,
    ):
        """
        Initialize the shell.

        Args:
            producer: Async callable ``(prompt, preamble) -> text``
            executor: Async callable ``(action, preamble) -> text``
            console: Console for normal output
            error_console: Console for errors (stderr by default)
            reader: Source of input lines (terminal by default)
            reader_factory: Creates a fresh reader after end of file
            resume_delay: Seconds before an Auto-mode interrupt resumes itself
            install_signal_handlers: Route SIGINT to ``handle_interrupt``
            **kwargs: Passed through to LoopController
        """
        super().__init__(producer, executor, **kwargs)
        self.console = console or Console()
        self.error_console = error_console or Console(stderr=True)
        self.reader: LineReader = reader or ConsoleLineReader(self.console)
        self.reader_factory = reader_factory or tty_reader_factory(self.console)
        self.resume_delay = resume_delay
        self.install_signal_handlers = install_signal_handlers
        self._quitting = False
        self._exit_code = 0
        self._resume_handle: Optional[asyncio.TimerHandle] = None
        self._resumed = asyncio.Event()
        self._resumed.set()

    @property
    def quitting(self) -> bool:
        return self._quitting

    @property
    def prompt_label(self) -> str:
        return "[yolo]> " if self.state.mode == Mode.AUTO else "[input]> "

    async def run(self, initial_prompt: Optional[str] = None) -> int:
        """
        Run the read-step loop until quit.

        Returns:
            Process exit code
        """
        self._install_signal_handler()
        logger.info("Shell started", mode=self.state.mode.value)
        try:
            if initial_prompt:
                await self.handle_line(initial_prompt)

            while not self._quitting:
                try:
                    line = await self.reader.readline(self.prompt_label)
                except InputClosed:
                    if self._quitting:
                        break
                    if not self._reopen():
                        return 1
                    continue
                await self.handle_line(line)

            self.console.print("Goodbye!")
            return self._exit_code
        finally:
            self._cancel_resume_timer()
            self._remove_signal_handler()
            logger.info("Shell stopped")

    async def handle_line(self, line: str) -> None:
        text = line.strip()
        if not text:
            return
        if text.startswith("/"):
            self.handle_command(text)
            return
        await self._run_cycle_safely(text)

    def handle_command(self, text: str) -> None:
        command = text.split()[0].lower()
        if command == "/h":
            self.console.print(HELP_TEXT)
        elif command == "/a":
            self.mode = Mode.AUTO
            self.console.print("[green]Auto mode[/green]: actions run without confirmation")
        elif command == "/c":
            self.mode = Mode.CONFIRM
            self.console.print("[yellow]Confirm mode[/yellow]: actions need confirmation")
        elif command == "/q":
            self.quit()
        else:
            self.error_console.print(f"[red]Unknown: {command}[/red]")

    def quit(self) -> None:
        """Mark the shell as quitting and close the input stream."""
        self._quitting = True
        self.reader.close()

    def begin_cycle(self) -> None:
        self._cancel_resume_timer()
        self._resumed.set()
        super().begin_cycle()

    async def confirm(self, action: str) -> Optional[str]:
        """
        Ask the user what to do with a proposed action.

        Returns:
            The action to execute, or None to skip it
        """
        self.console.print(Panel(Text(action), title="Proposed action", border_style="yellow"))
        while True:
            answer = (await self.reader.readline("Confirm? (Y/n/e)> ")).strip().lower()
            if answer in ("", "y", "yes"):
                return action
            if answer in ("n", "no"):
                return None
            if answer in ("e", "edit"):
                edited = (await self.reader.readline("Edit: ")).strip()
                return edited or action

    async def on_exit(self) -> None:
        """Terminal step: close down instead of dispatching to the producer."""
        self.state.transition_to(LoopPhase.COMPLETED)
        await self.on_stop(self.state.stop_reason)
        self.quit()

    async def on_step_started(self, iteration: int, prompt: str) -> None:
        await super().on_step_started(iteration, prompt)
        maximum = self.state.max_iterations or "∞"
        self.console.print(f"[bold cyan]PDCA {iteration}/{maximum}[/bold cyan]")

    async def on_action(self, action: str) -> None:
        await super().on_action(action)
        if self.state.mode == Mode.AUTO:
            self.console.print(Text(action))

    async def on_error(self, source: str, error: Exception) -> None:
        await super().on_error(source, error)
        self.error_console.print(f"[red]Error ({source}):[/red] {error}", markup=True, highlight=False)

    async def on_stop(self, reason: Optional[StopReason]) -> None:
        await super().on_stop(reason)
        if reason == StopReason.COMPLETION_PROMISE:
            self.console.print(f"[green]Completed[/green] after {self.state.iteration} iteration(s)")
        elif reason == StopReason.MAX_ITERATIONS:
            self.console.print(f"[yellow]Stopped[/yellow]: reached {self.state.max_iterations} iterations")

    def handle_interrupt(self) -> None:
        """SIGINT handler."""
        self.console.print("Use /q to quit")
        if self.state.mode == Mode.AUTO:
            if self.state.paused:
                self._cancel_resume_timer()
                self.resume()
                return
            self.interrupt()
            loop = asyncio.get_running_loop()
            self._resume_handle = loop.call_later(self.resume_delay, self._timed_resume)
        else:
            self.interrupt()
            self.resume()

    def interrupt(self) -> None:
        self._resumed.clear()
        super().interrupt()

    def resume(self) -> None:
        super().resume()
        self._resumed.set()

    def _timed_resume(self) -> None:
        self._resume_handle = None
        if self.state.paused:
            self.resume()

    def _cancel_resume_timer(self) -> None:
        if self._resume_handle is not None:
            self._resume_handle.cancel()
            self._resume_handle = None

    async def _run_cycle_safely(self, prompt: str) -> None:
        try:
            await self.run_cycle(prompt)
        except ProducerStalled as e:
            self.state.stop_reason = StopReason.STALLED
            self.state.transition_to(LoopPhase.IDLE)
            self.error_console.print(f"[red]Backend stalled:[/red] {e}")
            return
        except InputClosed:
            if not self._quitting:
                logger.warning("Input closed during a cycle")
                if not self._reopen():
                    self._exit_code = 1
                    self.quit()
            return

        if self.state.paused:
            await self._resumed.wait()

    def _reopen(self) -> bool:
        try:
            self.reader = self.reader_factory()
        except OSError as e:
            logger.error("Cannot reopen input", error=str(e))
            self.error_console.print(f"[red]Input closed and cannot be reopened:[/red] {e}")
            return False
        logger.info("Input reopened")
        return True

    def _install_signal_handler(self) -> None:
        if not self.install_signal_handlers:
            return
        try:
            asyncio.get_running_loop().add_signal_handler(signal.SIGINT, self.handle_interrupt)
        except (NotImplementedError, RuntimeError) as e:
            logger.warning("SIGINT handler not installed", error=str(e))
            self.install_signal_handlers = False

    def _remove_signal_handler(self) -> None:
        if not self.install_signal_handlers:
            return
        try:
            asyncio.get_running_loop().remove_signal_handler(signal.SIGINT)
        except (NotImplementedError, RuntimeError):
            pass
