"""The embedded text protocol: detecting and parsing invocation lines.

The model requests a tool by writing a line of the form::

    TOOL: <name> <arg> [<arg> ...]

Arguments are split with POSIX shell quoting. Tools whose last parameter
takes the rest of the line (``run_command``, ``write_file``) get the
unsplit remainder. A trailing ``<<TAG`` token opens a heredoc: every
following line up to a line reading ``TAG`` becomes the last argument::

    TOOL: write_file src/app.py <<EOF
    print("hello")
    EOF
"""

import re
import shlex
from dataclasses import dataclass

from .session import ToolCall
from .tools import get_spec, new_call_id, tool_names

TOOL_PREFIX = "TOOL:"
RESULT_PREFIX = "TOOL RESULT for"

_HEREDOC_RE = re.compile(r"(?:^|\s)<<([A-Za-z0-9_]+)\s*$")


@dataclass(frozen=True)
class DisplayText:
    text: str


@dataclass(frozen=True)
class Invocation:
    text: str


def _heredoc_tag(line: str) -> str | None:
    m = _HEREDOC_RE.search(line)
    return m.group(1) if m else None


class StreamTranscriber:
    """Turns model output fragments into display text and invocation lines.

    Fragments may split a line anywhere. Only the start of a line that
    could still turn out to be an invocation is held back; everything else
    is emitted as soon as it arrives.
    """

    def __init__(self, prefix: str = TOOL_PREFIX):
        self.prefix = prefix
        self._chunks: list[str] = []
        self._line = ""  # current line, not yet emitted
        self._mode = "start"  # start | display | invocation | block
        self._block: list[str] = []
        self._block_tag: str | None = None
        self.invocations: list[str] = []

    @property
    def raw_text(self) -> str:
        return "".join(self._chunks)

    def _classify(self) -> None:
        """Decide whether the pending line start is display text or an invocation."""
        head = self._line.lstrip(" \t")
        if head.startswith(self.prefix):
            self._mode = "invocation"
        elif not self.prefix.startswith(head):
            self._mode = "display"

    def _end_line(self, events: list) -> None:
        line = self._line
        self._line = ""
        if self._mode == "block":
            self._block.append(line)
            if line.strip() == self._block_tag:
                self._emit_block(events)
            return
        if self._mode == "invocation":
            tag = _heredoc_tag(line)
            if tag is not None:
                self._mode = "block"
                self._block = [line]
                self._block_tag = tag
                return
            self.invocations.append(line)
            events.append(Invocation(line))
        else:
            events.append(DisplayText(line + "\n"))
        self._mode = "start"

    def _emit_block(self, events: list) -> None:
        text = "\n".join(self._block)
        self.invocations.append(text)
        events.append(Invocation(text))
        self._block = []
        self._block_tag = None
        self._mode = "start"

    def feed(self, fragment: str) -> list:
        """Consume one fragment and return the events it completes."""
        events: list = []
        if not fragment:
            return events
        self._chunks.append(fragment)

        pos = 0
        while pos < len(fragment):
            nl = fragment.find("\n", pos)
            piece = fragment[pos:] if nl < 0 else fragment[pos:nl]
            pos = len(fragment) if nl < 0 else nl + 1

            if self._mode == "display":
                if piece:
                    events.append(DisplayText(piece))
            else:
                self._line += piece
                if self._mode == "start":
                    self._classify()
                    if self._mode == "display" and self._line:
                        events.append(DisplayText(self._line))
                        self._line = ""

            if nl >= 0:
                if self._mode == "display":
                    events.append(DisplayText("\n"))
                    self._mode = "start"
                else:
                    self._end_line(events)
        return _merge_display(events)

    def finish(self) -> list:
        """Flush the final line, which counts as complete even without a newline."""
        events: list = []
        if self._mode in ("invocation", "block"):
            if self._mode == "invocation":
                self._end_line(events)
            elif self._line:
                self._block.append(self._line)
                self._line = ""
            if self._mode == "block":
                self._emit_block(events)
        elif self._line:
            events.append(DisplayText(self._line))
            self._line = ""
        self._mode = "start"
        return events


def _merge_display(events: list) -> list:
    merged: list = []
    for ev in events:
        if merged and isinstance(ev, DisplayText) and isinstance(merged[-1], DisplayText):
            merged[-1] = DisplayText(merged[-1].text + ev.text)
        else:
            merged.append(ev)
    return merged


def transcribe(fragments, prefix: str = TOOL_PREFIX):
    """Yield events for an iterable of fragments, then the final flush."""
    transcriber = StreamTranscriber(prefix)
    for fragment in fragments:
        yield from transcriber.feed(fragment)
    yield from transcriber.finish()


# ---------------------------------------------------------------------------
# Parsing
# ---------------------------------------------------------------------------


class ParseFailure(ValueError):
    """A malformed invocation. ``kind`` is ParseError or UnknownTool."""

    def __init__(self, message: str, kind: str = "ParseError"):
        super().__init__(message)
        self.kind = kind


def _unquote(text: str) -> str:
    """Strip one pair of quotes wrapping the whole text."""
    if len(text) >= 2 and text[0] == text[-1] and text[0] in "\"'":
        try:
            parts = shlex.split(text)
        except ValueError:
            return text
        if len(parts) == 1:
            return parts[0]
    return text


def _split_args(remainder: str, count: int, rest: bool) -> list[str]:
    """Split arguments; with ``rest`` the last one takes the raw remainder."""
    if not rest:
        try:
            return shlex.split(remainder)
        except ValueError as e:
            raise ParseFailure(f"cannot split arguments: {e}")

    lexer = shlex.shlex(remainder, posix=True)
    lexer.whitespace_split = True
    lexer.commenters = ""
    args: list[str] = []
    try:
        for _ in range(count - 1):
            token = lexer.get_token()
            if token is None:
                return args
            args.append(token)
    except ValueError as e:
        raise ParseFailure(f"cannot split arguments: {e}")
    tail = lexer.instream.read().strip()
    if tail:
        args.append(_unquote(tail))
    return args


def _parse(text: str, prefix: str) -> tuple[str, list[str]]:
    lines = text.split("\n")
    header = lines[0].strip()
    if not header.startswith(prefix):
        raise ParseFailure(f"invocation must start with {prefix!r}")
    parts = header[len(prefix):].split(None, 1)
    if not parts:
        raise ParseFailure("missing tool name")
    name = parts[0]
    remainder = parts[1] if len(parts) > 1 else ""

    spec = get_spec(name)
    if spec is None:
        raise ParseFailure(
            f"unknown tool {name!r}; available tools: {', '.join(tool_names())}",
            kind="UnknownTool",
        )
    expected = len(spec.params)

    tag = _heredoc_tag(remainder)
    if tag is not None and spec.block:
        # Shell semantics: every body line ends with a newline.
        body_lines = lines[1:]
        if body_lines and body_lines[-1].strip() == tag:
            body_lines = body_lines[:-1]
        body = "".join(line + "\n" for line in body_lines)
        args = _split_args(_HEREDOC_RE.sub("", remainder), expected - 1, rest=False)
        args.append(body)
    elif tag is not None and spec.rest and expected == 1:
        # A shell heredoc inside the command line; the shell reads the body.
        args = ["\n".join([remainder, *lines[1:]])]
    elif tag is not None:
        raise ParseFailure(f"{name} does not accept a heredoc body")
    else:
        args = _split_args(remainder, expected, rest=spec.rest)

    if len(args) != expected:
        raise ParseFailure(
            f"{name} takes {expected} argument(s) ({spec.signature}), got {len(args)}"
        )
    return name, args


def parse_invocation(text: str, prefix: str = TOOL_PREFIX) -> ToolCall:
    """Turn one invocation into a ToolCall.

    Never raises for malformed input: the returned call carries the error
    instead, so that it can be reported back to the model.
    """
    call_id = new_call_id()
    try:
        name, args = _parse(text, prefix)
    except ParseFailure as e:
        words = text.split("\n", 1)[0].strip()[len(prefix):].split(None, 1)
        return ToolCall(
            id=call_id,
            name=words[0] if words else "?",
            source=text,
            error=str(e),
            error_kind=e.kind,
        )
    return ToolCall(id=call_id, name=name, args=tuple(args), source=text)


def parse_invocations(texts, prefix: str = TOOL_PREFIX) -> list[ToolCall]:
    """Parse each invocation independently, keeping source order."""
    return [parse_invocation(t, prefix) for t in texts]
