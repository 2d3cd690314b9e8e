import argparse
import enum
import functools
import logging
import os
import sys
import time
from dataclasses import dataclass
from datetime import datetime
from importlib import metadata
from pathlib import Path
from typing import NamedTuple

import tiktoken

from . import fmt
from .config import (
    DEFAULT_MODELS,
    PROVIDERS,
    _UNSET,
    apply_config_to_args,
    generate_config,
    load_config,
    resolve_api_key,
)
from .protocol import (
    RESULT_PREFIX,
    DisplayText,
    StreamTranscriber,
    parse_invocations,
)
from .report import AgentError, ConfigError, ReportCollector, TransportError
from .session import Message, SessionStore, ToolCall, ToolResult
from .tools import ToolContext, cancelled_result, execute_calls, format_tool_usage

logger = logging.getLogger(__name__)

DEFAULT_SYSTEM_PROMPT_FILE = Path(__file__).parent / "system_prompt.txt"
CONTEXT_FILES = ("SCRIVO.md", "AGENTS.md")
MAX_CONTEXT_CHARS = 10_000
MAX_ARG_LOG = 1000
CONTINUE_PROMPT = "Continue with the next step or provide the final answer."


# ---------------------------------------------------------------------------
# Model transport
# ---------------------------------------------------------------------------


class StreamChunk(NamedTuple):
    kind: str  # "content" | "thinking"
    text: str


def _litellm_target(
    provider: str, model: str, base_url: str | None, api_key: str | None
) -> tuple[str, dict]:
    """Map provider + model to a LiteLLM model string and call kwargs."""
    if provider == "deepseek":
        model_str = model if model.startswith("deepseek/") else f"deepseek/{model}"
        kwargs = {"api_key": api_key}
        if base_url:
            kwargs["api_base"] = base_url
    elif provider == "openrouter":
        # Only strip a doubled "openrouter/" prefix; "openrouter" can be an org name.
        bare_id = (
            model[len("openrouter/") :]
            if model.startswith("openrouter/openrouter/")
            else model
        )
        model_str = f"openrouter/{bare_id}"
        kwargs = {"api_key": api_key}
        if base_url:
            kwargs["api_base"] = base_url
    elif provider == "lmstudio":
        model_str = f"openai/{model}"
        kwargs = {
            "api_base": f"{base_url or 'http://127.0.0.1:1234'}/v1",
            "api_key": "lm-studio",
        }
    else:
        raise ConfigError(f"unknown provider {provider!r}")
    return model_str, kwargs


def stream_completion(
    messages: list[dict],
    *,
    provider: str,
    model: str,
    api_key: str | None = None,
    base_url: str | None = None,
    max_output_tokens: int = 8192,
    temperature: float | None = None,
):
    """Stream a chat completion as StreamChunk values.

    Any failure, at connect time or mid-stream, surfaces as TransportError.
    """
    import litellm

    litellm.suppress_debug_info = True
    model_str, kwargs = _litellm_target(provider, model, base_url, api_key)
    if temperature is not None:
        kwargs["temperature"] = temperature

    logger.debug("streaming completion from %s (%d messages)", model_str, len(messages))
    try:
        response = litellm.completion(
            model=model_str,
            messages=messages,
            max_tokens=max_output_tokens,
            stream=True,
            **kwargs,
        )
        for chunk in response:
            if not chunk.choices:
                continue
            delta = chunk.choices[0].delta
            reasoning = getattr(delta, "reasoning_content", None)
            if reasoning:
                yield StreamChunk("thinking", reasoning)
            if delta.content:
                yield StreamChunk("content", delta.content)
    except litellm.AuthenticationError as e:
        raise TransportError(f"authentication failed: {e}") from e
    except litellm.RateLimitError as e:
        raise TransportError(f"rate limited by provider: {e}") from e
    except litellm.APIConnectionError as e:
        raise TransportError(f"could not reach model service: {e}") from e
    except Exception as e:
        raise TransportError(f"LLM call failed: {e}") from e


# ---------------------------------------------------------------------------
# Prompt assembly
# ---------------------------------------------------------------------------


@functools.lru_cache(maxsize=1)
def _encoder():
    return tiktoken.get_encoding("cl100k_base")


def estimate_tokens(messages: list[dict]) -> int:
    """Count tokens across model messages using tiktoken."""
    try:
        enc = _encoder()
    except Exception as e:  # the encoding is fetched on first use
        logger.debug("tiktoken unavailable: %s", e)
        return sum(len(m.get("content") or "") for m in messages) // 4
    total = sum(len(enc.encode(m.get("content") or "")) for m in messages)
    # Per-message overhead (role, separators), ~4 tokens each
    return total + 4 * len(messages)


def load_context(
    base_dir: str, context_file: str | None, verbose: bool
) -> tuple[str, str | None]:
    """Load the static project-context file.

    Uses ``context_file`` if given, otherwise the first of SCRIVO.md and
    AGENTS.md found in base_dir. Returns (tagged_text, path_loaded).
    """
    if context_file:
        candidates = [Path(context_file).expanduser()]
        if not candidates[0].is_absolute():
            candidates = [Path(base_dir).resolve() / candidates[0]]
        if not candidates[0].is_file():
            raise ConfigError(f"context file not found: {context_file}")
    else:
        candidates = [Path(base_dir).resolve() / name for name in CONTEXT_FILES]

    for path in candidates:
        if not path.is_file():
            continue
        try:
            with path.open(encoding="utf-8", errors="replace") as f:
                content = f.read(MAX_CONTEXT_CHARS + 1)
        except OSError as e:
            fmt.warning(f"cannot read {path}: {e}")
            continue
        if len(content) > MAX_CONTEXT_CHARS:
            content = (
                content[:MAX_CONTEXT_CHARS]
                + f"\n[truncated: {path.name} exceeds {MAX_CONTEXT_CHARS} characters]"
            )
        if verbose:
            fmt.info(f"Loaded project context from {path}")
        return f"<project-context>\n{content}\n</project-context>", str(path)
    return "", None


def build_system_prompt(
    *,
    base_dir: str,
    system_prompt: str | None = None,
    context_file: str | None = None,
    no_context: bool = False,
    verbose: bool = False,
) -> tuple[str, str | None]:
    """Compose the system prompt: protocol + tool usage, date, project context."""
    if system_prompt:
        content = system_prompt
    else:
        content = DEFAULT_SYSTEM_PROMPT_FILE.read_text(encoding="utf-8")
    content = content.replace("{tool_usage}", format_tool_usage())

    now = datetime.now().astimezone()
    content += f"\n\nCurrent date and time: {now.strftime('%Y-%m-%d %H:%M %Z')}"

    loaded = None
    if not no_context:
        context, loaded = load_context(base_dir, context_file, verbose)
        if context:
            content += "\n\n" + context
    return content, loaded


def render_tool_result(result: ToolResult) -> str:
    if result.ok:
        return f"{RESULT_PREFIX} {result.tool_name}:\n{result.output}"
    return f"TOOL {result.tool_name} failed: {result.error_kind}: {result.output}"


def build_model_messages(system_prompt: str | None, history: list[Message]) -> list[dict]:
    """Flatten the session into chat messages.

    Tool results travel as user text; consecutive results share one message.
    """
    messages: list[dict] = []
    if system_prompt:
        messages.append({"role": "system", "content": system_prompt})

    pending: list[str] = []

    def _flush():
        if pending:
            messages.append(
                {"role": "user", "content": "\n\n".join(pending) + "\n\n" + CONTINUE_PROMPT}
            )
            pending.clear()

    for msg in history:
        if msg.role == "tool":
            pending.append(render_tool_result(msg.result))
            continue
        _flush()
        messages.append({"role": msg.role, "content": msg.content})
    _flush()
    return messages


# ---------------------------------------------------------------------------
# Turn loop
# ---------------------------------------------------------------------------


class LoopState(enum.Enum):
    AWAITING_INPUT = "awaiting_input"
    SUBMITTING = "submitting"
    STREAMING = "streaming"
    EXECUTING = "executing"


@dataclass
class TurnOutcome:
    answer: str | None
    rounds: int
    exhausted: bool = False
    interrupted: bool = False


def _args_preview(call: ToolCall) -> str:
    preview = "\n".join(call.args)
    if len(preview) > MAX_ARG_LOG:
        preview = preview[:MAX_ARG_LOG] + "\n... (truncated)"
    return preview


class AgentLoop:
    """Drives one user turn: submit, stream, execute tools, repeat.

    Every message is persisted through the SessionStore before the loop
    moves on, and every recorded tool call is resolved by a result before
    the next submission.
    """

    def __init__(
        self,
        store: SessionStore,
        session_id: str,
        *,
        system_prompt: str | None,
        tool_ctx: ToolContext,
        llm_kwargs: dict,
        history: list[Message] | None = None,
        max_rounds: int = 50,
        verbose: bool = True,
        report: ReportCollector | None = None,
        transport=None,
    ):
        self.store = store
        self.session_id = session_id
        self.system_prompt = system_prompt
        self.tool_ctx = tool_ctx
        self.llm_kwargs = llm_kwargs
        self.history: list[Message] = list(history or [])
        self.max_rounds = max_rounds
        self.verbose = verbose
        self.report = report
        self.transport = transport or stream_completion
        self.state = LoopState.AWAITING_INPUT
        self._rounds_total = 0

    def switch_session(self, session_id: str, history: list[Message]) -> None:
        self.session_id = session_id
        self.history = list(history)
        self.state = LoopState.AWAITING_INPUT

    def _append(self, message: Message) -> None:
        self.store.append(self.session_id, message)
        self.history.append(message)

    def run_turn(self, text: str) -> TurnOutcome:
        """Append the user's message and loop until the model stops calling tools."""
        self._close_open_calls()
        self._append(Message.user(text))
        return self._drive()

    def continue_turn(self) -> TurnOutcome:
        """Resubmit the conversation as it stands, without new user input."""
        self._close_open_calls()
        return self._drive()

    def _close_open_calls(self) -> None:
        """Cancel calls a crashed run recorded without ever resolving them."""
        resolved = {msg.result.call_id for msg in self.history if msg.result is not None}
        open_calls = [
            call
            for msg in self.history
            if msg.role == "assistant"
            for call in msg.tool_calls
            if call.id not in resolved
        ]
        if open_calls:
            logger.warning("cancelling %d unresolved tool call(s)", len(open_calls))
        for call in open_calls:
            self._append(Message.tool(cancelled_result(call, "session interrupted")))

    def _last_answer(self) -> str | None:
        for msg in reversed(self.history):
            if msg.role == "assistant" and msg.content:
                return msg.content
        return None

    def _drive(self) -> TurnOutcome:
        rounds = 0
        self.state = LoopState.SUBMITTING
        try:
            while True:
                if rounds >= self.max_rounds:
                    if self.verbose:
                        fmt.completion(rounds, "max_rounds")
                    return TurnOutcome(self._last_answer(), rounds, exhausted=True)
                rounds += 1
                self._rounds_total += 1

                model_messages = build_model_messages(self.system_prompt, self.history)
                token_est = estimate_tokens(model_messages) if (self.verbose or self.report) else 0
                if self.verbose:
                    fmt.round_header(rounds, self.max_rounds, token_est)

                self.state = LoopState.STREAMING
                streamed = self._stream(model_messages, token_est)
                if streamed is None:
                    return TurnOutcome(self._last_answer(), rounds, interrupted=True)
                text, calls = streamed

                self.state = LoopState.EXECUTING
                if not calls:
                    if self.verbose:
                        fmt.completion(rounds, "ok")
                    return TurnOutcome(text, rounds)

                if self._execute(calls):
                    return TurnOutcome(self._last_answer(), rounds, interrupted=True)
                self.state = LoopState.SUBMITTING
        finally:
            self.state = LoopState.AWAITING_INPUT

    def _stream(self, model_messages: list[dict], token_est: int):
        """Consume one model response. Returns (text, calls), or None if interrupted."""
        transcriber = StreamTranscriber()
        thinking = False
        t0 = time.monotonic()
        try:
            for chunk in self.transport(model_messages, **self.llm_kwargs):
                if chunk.kind == "thinking":
                    if self.verbose:
                        if not thinking:
                            fmt.thinking_header()
                            thinking = True
                        fmt.thinking_chunk(chunk.text)
                    continue
                if thinking:
                    fmt.thinking_footer()
                    thinking = False
                self._display(transcriber.feed(chunk.text))
            if thinking:
                fmt.thinking_footer()
            self._display(transcriber.finish())
        except KeyboardInterrupt:
            fmt.end_stream()
            fmt.warning("interrupted, partial response kept and its tool calls cancelled")
            self._record_llm_call(t0, token_est, "interrupted")
            if self.report:
                self.report.record_interrupt(self._rounds_total, LoopState.STREAMING.value)
            self._abandon(transcriber, "interrupted by user")
            return None
        except TransportError:
            fmt.end_stream()
            self._record_llm_call(t0, token_est, "error")
            self._abandon(transcriber, "model stream failed")
            raise
        fmt.end_stream()

        text = transcriber.raw_text
        calls = parse_invocations(transcriber.invocations)
        elapsed = self._record_llm_call(t0, token_est, "stop", tool_calls=len(calls))
        if self.verbose:
            fmt.llm_timing(elapsed, "stop")
        self._append(Message.assistant(text, calls))
        return text, calls

    def _display(self, events: list) -> None:
        for event in events:
            if isinstance(event, DisplayText):
                fmt.assistant_chunk(event.text)

    def _record_llm_call(self, t0: float, token_est: int, outcome: str, tool_calls: int = 0) -> float:
        elapsed = time.monotonic() - t0
        if self.report:
            self.report.record_llm_call(
                self._rounds_total, elapsed, token_est, outcome, tool_calls=tool_calls
            )
        return elapsed

    def _abandon(self, transcriber: StreamTranscriber, reason: str) -> None:
        """Keep a cut-off response, resolving its complete invocations as cancelled."""
        text = transcriber.raw_text
        calls = parse_invocations(transcriber.invocations)
        if not text and not calls:
            return
        self._append(Message.assistant(text, calls, interrupted=True))
        for call in calls:
            self._append(Message.tool(cancelled_result(call, reason)))

    def _execute(self, calls: list[ToolCall]) -> bool:
        """Run the calls in order and persist each result. Returns True if interrupted."""

        def before(call: ToolCall) -> None:
            if self.verbose and call.error is None:
                fmt.tool_call(call.name, _args_preview(call))

        def after(call: ToolCall, result: ToolResult) -> None:
            self._append(Message.tool(result))
            if self.verbose:
                if result.ok:
                    fmt.tool_result(call.name, result.duration, result.output[:500])
                else:
                    fmt.tool_error(call.name, result.error_kind, result.output)
            if self.report:
                self.report.record_tool_call(
                    self._rounds_total,
                    call.name,
                    list(call.args),
                    result.ok,
                    result.duration,
                    len(result.output),
                    error=None if result.ok else f"{result.error_kind}: {result.output}",
                )

        _, interrupted = execute_calls(calls, self.tool_ctx, before=before, after=after)
        if interrupted:
            fmt.warning("interrupted, remaining tool calls cancelled")
            if self.report:
                self.report.record_interrupt(self._rounds_total, LoopState.EXECUTING.value)
        return interrupted


# ---------------------------------------------------------------------------
# Command line
# ---------------------------------------------------------------------------


def build_parser():
    """Build and return the argument parser."""
    parser = argparse.ArgumentParser(
        prog="scrivo",
        usage="%(prog)s [options] [question]",
        description=(
            "A terminal coding agent. The model reads, writes and edits files and runs "
            "commands through TOOL: lines in its replies."
        ),
    )
    parser.add_argument(
        "--version",
        action="store_true",
        help="Print the version and exit.",
    )
    parser.add_argument(
        "question",
        nargs="?",
        default=None,
        help="Run this one request and exit. Without it, start an interactive session.",
    )
    parser.add_argument(
        "--repl",
        action="store_true",
        help="Stay in the interactive session after answering the question.",
    )
    parser.add_argument(
        "--resume",
        metavar="SESSION_ID",
        default=None,
        help="Continue a saved session.",
    )
    parser.add_argument(
        "--list-sessions",
        action="store_true",
        help="List saved sessions and exit.",
    )
    parser.add_argument(
        "--provider",
        choices=list(PROVIDERS),
        default=_UNSET,
        help="LLM provider (default: deepseek).",
    )
    parser.add_argument(
        "--model",
        type=str,
        default=_UNSET,
        help="Model identifier (default: deepseek-chat for deepseek).",
    )
    parser.add_argument(
        "--api-key",
        type=str,
        default=_UNSET,
        help="API key for the provider (overrides env var and config).",
    )
    parser.add_argument(
        "--base-url",
        default=_UNSET,
        help="Override the provider's API base URL.",
    )
    parser.add_argument(
        "--max-output-tokens",
        type=int,
        default=_UNSET,
        help="Maximum output tokens per response (default: 8192).",
    )
    parser.add_argument(
        "--temperature",
        type=float,
        default=_UNSET,
        help="Sampling temperature (default: provider default).",
    )
    parser.add_argument(
        "--max-rounds",
        type=int,
        default=_UNSET,
        help="Maximum model rounds per user turn (default: 50).",
    )
    parser.add_argument(
        "--base-dir",
        type=str,
        default=".",
        help="Project directory for tools and context (default: current directory).",
    )
    parser.add_argument(
        "--sessions-dir",
        type=str,
        default=_UNSET,
        help="Where session logs are kept (default: <base-dir>/.scrivo/sessions).",
    )
    parser.add_argument(
        "--system-prompt",
        type=str,
        default=_UNSET,
        help="Replace the built-in system prompt.",
    )

    context_group = parser.add_mutually_exclusive_group()
    context_group.add_argument(
        "--context-file",
        type=str,
        default=_UNSET,
        help="Project context file to include (default: SCRIVO.md or AGENTS.md).",
    )
    context_group.add_argument(
        "--no-context",
        action="store_true",
        default=_UNSET,
        help="Don't load a project context file.",
    )

    parser.add_argument(
        "--command-timeout",
        type=int,
        default=_UNSET,
        help="Seconds before run_command is killed (default: 60).",
    )
    parser.add_argument(
        "--yolo",
        action="store_true",
        default=_UNSET,
        help="Let file tools reach outside the base directory.",
    )
    parser.add_argument(
        "--report",
        type=str,
        default=None,
        metavar="FILE",
        help="Write a JSON run report to FILE. Requires a question; incompatible with --repl.",
    )
    parser.add_argument(
        "-q",
        "--quiet",
        action="store_true",
        default=_UNSET,
        help="Suppress diagnostics; only print the model's answer.",
    )
    parser.add_argument(
        "--debug",
        action="store_true",
        help="Log debug details to stderr.",
    )

    color_group = parser.add_mutually_exclusive_group()
    color_group.add_argument(
        "--color",
        action="store_true",
        default=_UNSET,
        help="Force ANSI color even when stderr is not a TTY.",
    )
    color_group.add_argument(
        "--no-color",
        action="store_true",
        default=_UNSET,
        help="Disable ANSI color even when stderr is a TTY.",
    )

    parser.add_argument(
        "--init-config",
        action="store_true",
        help="Print a template config file and exit.",
    )
    parser.add_argument(
        "--project",
        action="store_true",
        help="With --init-config, print the project (scrivo.toml) template.",
    )
    return parser


def main():
    parser = build_parser()
    args = parser.parse_args()

    if args.version:
        try:
            version = metadata.version("scrivo")
        except metadata.PackageNotFoundError:
            version = "unknown"
        print(version)
        sys.exit(0)

    if args.init_config:
        print(generate_config(project=args.project), end="")
        sys.exit(0)

    if args.report and (args.repl or args.question is None):
        parser.error("--report needs a question and is incompatible with --repl")

    try:
        config = load_config(args.base_dir)
    except ConfigError as e:
        fmt.error(str(e))
        sys.exit(1)
    apply_config_to_args(args, config)
    args.verbose = not args.quiet

    fmt.init(color=args.color, no_color=args.no_color)
    fmt.setup_logging(args.debug)

    report = ReportCollector() if args.report else None

    def _write_report(outcome, answer=None, exit_code=0, rounds=0, error_message=None):
        if not report:
            return
        report.finalize(
            task=args.question or "",
            model=getattr(args, "_resolved_model", None) or "unknown",
            provider=args.provider,
            session_id=getattr(args, "_session_id", None),
            settings={
                "max_rounds": args.max_rounds,
                "max_output_tokens": args.max_output_tokens,
                "temperature": args.temperature,
                "command_timeout": args.command_timeout,
                "yolo": args.yolo,
                "context_loaded": getattr(args, "_context_loaded", None),
            },
            outcome=outcome,
            answer=answer,
            exit_code=exit_code,
            rounds=rounds,
            error_message=error_message,
        )
        try:
            report.write(args.report)
        except OSError as e:
            fmt.error(f"Failed to write report to {args.report}: {e}")
            return
        if args.verbose:
            fmt.info(f"Report written to {args.report}")

    try:
        exit_code = _run_main(args, config, report, _write_report)
    except AgentError as e:
        fmt.error(str(e))
        session_id = getattr(args, "_session_id", None)
        if session_id:
            fmt.info(f"Session {session_id} is saved; resume it with --resume {session_id}")
        _write_report(
            "error",
            exit_code=1,
            rounds=report.max_round_seen if report else 0,
            error_message=str(e),
        )
        sys.exit(1)
    sys.exit(exit_code)


def _print_sessions(store: SessionStore) -> None:
    sessions = store.list_sessions()
    if not sessions:
        fmt.info(f"no sessions in {store.root}")
        return
    for session_id, created, count in sessions:
        print(f"{session_id}\t{created}\t{count} messages")


def _run_main(args, config: dict, report, _write_report) -> int:
    base_dir = args.base_dir
    if not Path(base_dir).is_dir():
        raise ConfigError(f"base directory does not exist: {base_dir}")

    sessions_dir = args.sessions_dir or str(Path(base_dir) / ".scrivo" / "sessions")
    store = SessionStore(sessions_dir)

    if args.list_sessions:
        _print_sessions(store)
        return 0

    model = args.model or DEFAULT_MODELS.get(args.provider)
    if not model:
        raise ConfigError(f"--model is required when --provider is {args.provider}")
    args._resolved_model = model
    api_key = resolve_api_key(args.provider, args.api_key, config)

    system_prompt, context_loaded = build_system_prompt(
        base_dir=base_dir,
        system_prompt=args.system_prompt,
        context_file=args.context_file,
        no_context=args.no_context,
        verbose=args.verbose,
    )
    args._context_loaded = context_loaded

    if args.resume:
        history = store.resume(args.resume)
        session_id = args.resume
        if args.verbose:
            fmt.session_info(session_id, resumed=True, message_count=len(history))
    else:
        history = []
        session_id = store.create()
        if args.verbose:
            fmt.session_info(session_id, resumed=False)
    args._session_id = session_id

    if args.verbose:
        fmt.model_info(f"Using {args.provider} model {model}")

    loop = AgentLoop(
        store,
        session_id,
        system_prompt=system_prompt,
        tool_ctx=ToolContext(
            base_dir=base_dir,
            unrestricted=args.yolo,
            command_timeout=args.command_timeout,
        ),
        llm_kwargs=dict(
            provider=args.provider,
            model=model,
            api_key=api_key,
            base_url=args.base_url,
            max_output_tokens=args.max_output_tokens,
            temperature=args.temperature,
        ),
        history=history,
        max_rounds=args.max_rounds,
        verbose=args.verbose,
        report=report,
    )

    if args.question is not None and not args.repl:
        outcome = loop.run_turn(args.question)
        status = "exhausted" if outcome.exhausted else (
            "interrupted" if outcome.interrupted else "success"
        )
        _write_report(
            status,
            answer=outcome.answer,
            exit_code=2 if outcome.exhausted else 0,
            rounds=outcome.rounds,
        )
        if args.verbose:
            fmt.info(f"Session {session_id} saved; resume it with --resume {session_id}")
        if outcome.exhausted:
            fmt.warning("max rounds reached, agent stopped.")
            return 2
        return 0

    if args.question is not None:
        outcome = loop.run_turn(args.question)
        if outcome.exhausted:
            fmt.warning("max rounds reached for the initial question.")

    repl_loop(loop, store, base_dir=base_dir, verbose=args.verbose)
    return 0


# ---------------------------------------------------------------------------
# REPL
# ---------------------------------------------------------------------------


def _repl_help() -> None:
    """Print available REPL commands."""
    fmt.info(
        "Available commands:\n"
        "  /help              Show this help message\n"
        "  /session           Show the current session id\n"
        "  /new               Start a new session\n"
        "  /continue          Let the model continue the current turn\n"
        "  /exit, /quit       Exit the REPL\n"
        "Ctrl-C stops the running turn; Ctrl-D exits."
    )


def _repl_run(loop: AgentLoop, line: str | None) -> None:
    """Run one turn from the REPL, keeping the REPL alive on transport errors."""
    try:
        outcome = loop.run_turn(line) if line is not None else loop.continue_turn()
    except TransportError as e:
        fmt.error(str(e))
        fmt.info("The conversation is saved; send another message or /continue to retry.")
        return
    except KeyboardInterrupt:
        fmt.warning("interrupted.")
        return
    if outcome.exhausted:
        fmt.warning("max rounds reached; use /continue to keep going.")


def repl_loop(
    loop: AgentLoop,
    store: SessionStore,
    *,
    base_dir: str,
    verbose: bool,
) -> None:
    """Interactive read-eval-print loop."""
    from prompt_toolkit import PromptSession
    from prompt_toolkit.formatted_text import FormattedText
    from prompt_toolkit.history import FileHistory

    history_path = os.path.join(base_dir, ".scrivo", "repl_history")
    os.makedirs(os.path.dirname(history_path), exist_ok=True)
    session = PromptSession(
        history=FileHistory(history_path),
        enable_history_search=True,
    )
    prompt_text = FormattedText([("bold fg:ansicyan", "> ")])

    if verbose:
        fmt.repl_banner()

    while True:
        try:
            print(file=sys.stderr)  # blank line before prompt
            line = session.prompt(prompt_text)
        except EOFError:
            print(file=sys.stderr)
            break
        except KeyboardInterrupt:
            continue

        line = line.strip()
        if not line:
            continue

        if line in ("/exit", "/quit"):
            break

        cmd = line.split(None, 1)[0].lower()
        if cmd == "/help":
            _repl_help()
            continue
        elif cmd == "/session":
            fmt.session_info(loop.session_id, resumed=False)
            continue
        elif cmd == "/new":
            session_id = store.create()
            loop.switch_session(session_id, [])
            fmt.session_info(session_id, resumed=False)
            continue
        elif cmd == "/continue":
            if not loop.history:
                fmt.warning("nothing to continue")
                continue
            _repl_run(loop, None)
            continue

        _repl_run(loop, line)


if __name__ == "__main__":
    main()
