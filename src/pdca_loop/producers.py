"""
Command producers (the AI agent side of the loop).

A producer is any async callable ``(prompt, preamble) -> text``. Two are
provided: a Gemini chat session and a wrapper around an agent CLI.
"""

import asyncio
import shutil
import time
from typing import Any, Dict, List, Optional

from pdca_loop.config import AppConfig, get_secret
from pdca_loop.context import RunContext
from pdca_loop.logging import get_logger
from pdca_loop.prompts import persona_prompt

logger = get_logger(__name__)

# Import google-generativeai
try:
    import google.generativeai as genai
    HAS_GENAI = True
except ImportError:
    HAS_GENAI = False
    logger.warning("google-generativeai not installed")


# Output budget per reasoning effort
REASONING_OUTPUT_TOKENS = {
    "low": 2048,
    "medium": 8192,
    "high": 32768,
    "xhigh": 65536,
}


class GeminiProducer:
    """
    Gemini chat session used as the loop's producer.

    History lives in memory only. The per-step preamble goes in as the
    system instruction, so the model always sees the current counters.
    """

    def __init__(
        self,
        api_key: Optional[str] = None,
        model: str = "gemini-2.5-flash",
        timeout_seconds: float = 600.0,
        persona: Optional[str] = None,
        reasoning_effort: Optional[str] = None,
    ):
        """
        Initialize the producer.

        Args:
            api_key: Gemini API key
            model: Model ID to use
            timeout_seconds: Per-call timeout
            persona: Optional persona name activated on the first message
            reasoning_effort: low/medium/high/xhigh output budget
        """
        self.api_key = api_key
        self.model = model
        self.timeout_seconds = timeout_seconds
        self.persona = persona
        self.reasoning_effort = reasoning_effort
        self._configured = False
        self._history: List[Dict[str, Any]] = []
        self._call_count = 0
        self._error_count = 0

        logger.info(
            "GeminiProducer initialized",
            model=model,
            timeout=timeout_seconds,
            persona=persona,
            has_api_key=bool(api_key),
        )

    @property
    def available(self) -> bool:
        return HAS_GENAI and bool(self.api_key)

    @property
    def history(self) -> List[Dict[str, Any]]:
        return list(self._history)

    def _is_gemma_model(self) -> bool:
        """Gemma models don't support system instructions."""
        return "gemma" in self.model.lower()

    def _ensure_configured(self) -> bool:
        if self._configured:
            return True
        if not HAS_GENAI:
            logger.error("google-generativeai not installed")
            return False
        if not self.api_key:
            logger.error("GEMINI_API_KEY not set")
            return False
        genai.configure(api_key=self.api_key)
        self._configured = True
        return True

    def _build_model(self, preamble: str) -> Any:
        generation_config = genai.GenerationConfig(
            max_output_tokens=REASONING_OUTPUT_TOKENS.get(self.reasoning_effort or "", 8192),
        )
        if self._is_gemma_model():
            return genai.GenerativeModel(self.model, generation_config=generation_config)
        return genai.GenerativeModel(
            self.model,
            system_instruction=preamble,
            generation_config=generation_config,
        )

    def _user_message(self, prompt: str, preamble: str) -> str:
        text = prompt
        if self.persona and not self._history:
            text = f"{persona_prompt(self.persona)}\n\n{text}"
        if self._is_gemma_model():
            text = f"{preamble}\n\n---\n\n{text}"
        return text

    async def __call__(self, prompt: str, preamble: str) -> str:
        """
        Send ``prompt`` and return the model's reply.

        Ordinary API failures come back as diagnostic text so the loop can
        record them as the step's content.
        """
        if not self._ensure_configured():
            self._error_count += 1
            return "Error: Gemini API not configured (install google-generativeai and set GEMINI_API_KEY)"

        start = time.time()
        self._call_count += 1
        message = {"role": "user", "parts": [self._user_message(prompt, preamble)]}
        contents = self._history + [message]
        model = self._build_model(preamble)

        loop = asyncio.get_running_loop()
        try:
            response = await asyncio.wait_for(
                loop.run_in_executor(None, lambda: model.generate_content(contents)),
                timeout=self.timeout_seconds,
            )
            text = response.text
        except asyncio.TimeoutError:
            self._error_count += 1
            logger.warning("Gemini call timed out", timeout=self.timeout_seconds)
            return f"Error: Gemini request timed out after {self.timeout_seconds}s"
        except Exception as e:
            self._error_count += 1
            logger.warning("Gemini call failed", error=str(e))
            return f"Error: Gemini request failed: {e}"

        self._history.append(message)
        self._history.append({"role": "model", "parts": [text]})

        logger.info(
            "Gemini reply received",
            duration_ms=int((time.time() - start) * 1000),
            length=len(text),
            turns=len(self._history) // 2,
        )
        return text

    async def ping(self) -> bool:
        """Health probe: look the model up through the API."""
        if not self._ensure_configured():
            return False
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(None, lambda: genai.get_model(f"models/{self.model}"))
        return True

    def get_stats(self) -> dict:
        return {
            "model": self.model,
            "calls": self._call_count,
            "errors": self._error_count,
            "turns": len(self._history) // 2,
        }


class CommandProducer:
    """
    Runs an agent CLI once per step.

    The preamble and prompt are joined and appended as the last argument;
    the process's stdout is the step's proposed action. A resumed run
    passes ``resume_args`` so the agent reattaches to its earlier session.
    """

    def __init__(
        self,
        command: List[str],
        timeout_seconds: float = 600.0,
        persona: Optional[str] = None,
        extra_args: Optional[List[str]] = None,
        session_id: Optional[str] = None,
        resume_args: Optional[List[str]] = None,
    ):
        """
        Initialize the producer.

        Args:
            command: Agent CLI and its leading arguments
            timeout_seconds: Per-call timeout
            persona: Optional persona name activated on the first call
            extra_args: Arguments placed before the prompt on every call
            session_id: Session the agent should attach to
            resume_args: Arguments that reattach the agent to ``session_id``;
                empty for a fresh session
        """
        if not command:
            raise ValueError("command must not be empty")
        self.command = list(command)
        self.timeout_seconds = timeout_seconds
        self.persona = persona
        self.extra_args = list(extra_args or [])
        self.session_id = session_id
        self.resume_args = [arg.replace("{session_id}", session_id or "") for arg in resume_args or []]
        self._call_count = 0

    def build_argv(self, prompt: str, preamble: str) -> List[str]:
        text = f"{preamble}\n\n{prompt}"
        if self.persona and self._call_count == 0:
            text = f"{persona_prompt(self.persona)}\n\n{text}"
        # Options go right after the program so a trailing prompt flag such
        # as "-p" stays next to the prompt
        return self.command[:1] + self.resume_args + self.extra_args + self.command[1:] + [text]

    async def __call__(self, prompt: str, preamble: str) -> str:
        argv = self.build_argv(prompt, preamble)
        self._call_count += 1
        logger.debug("Starting producer command", program=argv[0])

        process = await asyncio.create_subprocess_exec(
            *argv,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        try:
            stdout, stderr = await asyncio.wait_for(
                process.communicate(), timeout=self.timeout_seconds
            )
        except asyncio.TimeoutError:
            process.kill()
            await process.wait()
            logger.warning("Producer command timed out", timeout=self.timeout_seconds)
            return f"Error: {argv[0]} timed out after {self.timeout_seconds}s"
        except asyncio.CancelledError:
            if process.returncode is None:
                process.kill()
            raise

        out = stdout.decode("utf-8", errors="replace")
        if process.returncode != 0:
            err = stderr.decode("utf-8", errors="replace").strip()
            logger.warning("Producer command failed", returncode=process.returncode)
            return f"{out}\nError: {argv[0]} exited with status {process.returncode}: {err}".strip()
        return out

    async def ping(self) -> bool:
        """Health probe: the agent binary is still on PATH."""
        return shutil.which(self.command[0]) is not None


def build_producer(config: AppConfig, context: RunContext) -> Any:
    """
    Create the producer named by ``config.producer.kind``.

    Raises:
        ConfigurationError: If the Gemini API key is missing
    """
    settings = config.producer
    logger.info("Building producer", kind=settings.kind, session_id=context.session_id)

    if settings.kind == "command":
        extra_args: List[str] = []
        if settings.model:
            extra_args += ["--model", settings.model]
        if settings.reasoning_effort:
            extra_args += ["--reasoning-effort", settings.reasoning_effort]
        return CommandProducer(
            command=settings.command,
            timeout_seconds=settings.timeout_seconds,
            persona=settings.persona,
            extra_args=extra_args,
            session_id=context.session_id,
            resume_args=settings.resume_args if context.resumed else None,
        )

    if context.resumed:
        logger.warning("Gemini chats are not persisted, resumed session starts a new chat")
    return GeminiProducer(
        api_key=get_secret(settings.api_key_env, required=True),
        model=settings.model,
        timeout_seconds=settings.timeout_seconds,
        persona=settings.persona,
        reasoning_effort=settings.reasoning_effort,
    )
