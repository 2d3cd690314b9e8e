"""ANSI-formatted terminal output using Rich.

Diagnostics go to stderr; the assistant's streamed answer goes to stdout.
"""

import logging

from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape
from rich.rule import Rule
from rich.text import Text

_console = Console(stderr=True)
_out = Console(soft_wrap=True)
_stream_open = False


def init(*, color: bool = False, no_color: bool = False) -> None:
    """Reconfigure the module-level consoles from CLI flags.

    Call once at startup, before any output.
    """
    global _console, _out
    kwargs: dict = {}
    if color:
        kwargs["force_terminal"] = True
        kwargs["no_color"] = False
    if no_color:
        kwargs["no_color"] = True
    _console = Console(stderr=True, **kwargs)
    _out = Console(soft_wrap=True, **kwargs)


def setup_logging(debug: bool) -> None:
    """Route module loggers to stderr through Rich."""
    handler = RichHandler(console=_console, show_path=False, markup=False)
    logging.basicConfig(
        level=logging.DEBUG if debug else logging.WARNING,
        format="%(name)s: %(message)s",
        handlers=[handler],
        force=True,
    )
    # litellm is chatty at DEBUG
    logging.getLogger("LiteLLM").setLevel(logging.WARNING)


# -- Round structure ---------------------------------------------------------


def round_header(n: int, max_n: int, token_est: int) -> None:
    title = f"Round {n}/{max_n} (~{token_est} tokens)"
    _console.print(Rule(title, style="cyan"))


def llm_timing(elapsed: float, outcome: str) -> None:
    style = "green" if outcome == "stop" else "yellow"
    text = Text()
    text.append(f"  LLM responded in {elapsed:.1f}s", style=style)
    text.append(f"  outcome={escape(str(outcome))}", style=style)
    _console.print(text)


def completion(rounds: int, status: str) -> None:
    if status == "ok":
        _console.print(
            Text(f"  ✓ Agent finished: {rounds} rounds", style="bold green")
        )
    else:
        _console.print(
            Text(f"  Agent finished: {rounds} rounds, status={status}", style="bold red")
        )


# -- Streamed assistant text -------------------------------------------------


def assistant_chunk(text: str) -> None:
    """Write a fragment of the assistant's answer to stdout as it arrives."""
    global _stream_open
    if not text:
        return
    _out.print(text, end="", markup=False, highlight=False)
    _out.file.flush()
    _stream_open = not text.endswith("\n")


def end_stream() -> None:
    """Terminate a partially written answer line."""
    global _stream_open
    if _stream_open:
        _out.print()
        _stream_open = False


def thinking_chunk(text: str) -> None:
    _console.print(Text(text, style="dim italic"), end="")


def thinking_header() -> None:
    _console.print(Text("--- Thinking ---", style="yellow"))


def thinking_footer() -> None:
    _console.print()
    _console.print(Text("--- End of thinking ---", style="yellow"))


# -- Tool calls --------------------------------------------------------------


def tool_call(name: str, args_preview: str) -> None:
    end_stream()
    header = Text()
    header.append("  ▶ ", style="bold magenta")
    header.append(name, style="bold magenta")
    _console.print(header)
    if args_preview:
        for line in args_preview.splitlines():
            _console.print(Text(f"    {line}", style="dim"))


def tool_result(name: str, elapsed: float, preview: str) -> None:
    header = Text()
    header.append(f"  ✓ {name}", style="green")
    header.append(f"  {elapsed:.1f}s", style="green")
    _console.print(header)
    if preview:
        _console.print(Text(f"    {preview}", style="dim"))


def tool_error(name: str, kind: str, msg: str) -> None:
    header = Text()
    header.append(f"  ✗ {name}", style="bold red")
    header.append(f"  {kind}: {msg}", style="red")
    _console.print(header)


# -- Diagnostics -------------------------------------------------------------


def model_info(msg: str) -> None:
    _console.print(Text(f"  {msg}", style="dim"))


def info(msg: str) -> None:
    _console.print(Text(f"  {msg}", style="dim"))


def session_info(session_id: str, resumed: bool, message_count: int = 0) -> None:
    line = Text()
    if resumed:
        line.append("  Resumed session ", style="dim")
        line.append(session_id, style="bold cyan")
        line.append(f" ({message_count} messages)", style="dim")
    else:
        line.append("  Session ", style="dim")
        line.append(session_id, style="bold cyan")
    _console.print(line)


def warning(msg: str) -> None:
    end_stream()
    line = Text()
    line.append("  ⚠ Warning: ", style="yellow")
    line.append(msg, style="yellow")
    _console.print(line)


def error(msg: str) -> None:
    end_stream()
    line = Text()
    line.append("Error: ", style="bold red")
    line.append(msg, style="red")
    _console.print(line)


def repl_banner() -> None:
    _console.print(
        Text("Interactive mode. Type /help for commands, /exit or Ctrl-D to quit.", style="dim")
    )
