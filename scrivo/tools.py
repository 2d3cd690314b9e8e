"""Tool catalog and implementations for the text-protocol agent."""

import logging
import os
import subprocess
import sys
import tempfile
import threading
import time
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Callable

from .edit import BlockFormatError, MatchError, apply_blocks, parse_blocks
from .session import ToolCall, ToolResult

logger = logging.getLogger(__name__)

MAX_READ_CHARS = 256 * 1024
MAX_LIST_ENTRIES = 1000
MAX_COMMAND_OUTPUT = 50 * 1024  # 50 KB
BINARY_CHECK_BYTES = 8 * 1024  # 8 KB
DEFAULT_COMMAND_TIMEOUT = 60
MAX_COMMAND_TIMEOUT = 600


class ToolError(Exception):
    """A tool ran but its operation failed. ``kind`` names the failure class."""

    def __init__(self, kind: str, message: str):
        super().__init__(f"{kind}: {message}")
        self.kind = kind
        self.message = message


@dataclass(frozen=True)
class ToolSpec:
    """Static description of one tool.

    ``rest``: the last parameter takes the remainder of the invocation line.
    ``block``: the last parameter may be given as a heredoc body (``<<EOF``).
    """

    name: str
    params: tuple[str, ...]
    usage: str
    handler: Callable[..., str]
    rest: bool = False
    block: bool = False

    @property
    def signature(self) -> str:
        return " ".join([self.name, *(f"<{p}>" for p in self.params)])


@dataclass
class ToolContext:
    base_dir: str = "."
    unrestricted: bool = False
    command_timeout: int = DEFAULT_COMMAND_TIMEOUT


def new_call_id() -> str:
    return f"call_{uuid.uuid4().hex[:8]}"


def safe_resolve(file_path: str, base_dir: str, unrestricted: bool = False) -> Path:
    """Resolve a path against base_dir, keeping it inside base_dir.

    Symlinks are resolved before the containment check. When unrestricted
    is True the check is skipped, except that the filesystem root itself is
    never a valid target.

    Raises:
        ToolError: PermissionDenied if the path escapes base_dir,
            InvalidArguments if it contains a NUL byte.
    """
    if "\x00" in file_path:
        raise ToolError("InvalidArguments", f"path {file_path!r} contains a NUL byte")
    base = Path(base_dir).resolve()
    p = Path(file_path).expanduser()
    resolved = p.resolve() if p.is_absolute() else (base / p).resolve()

    if unrestricted:
        if resolved == Path(resolved.anchor):
            raise ToolError(
                "PermissionDenied",
                f"path {file_path!r} resolves to the filesystem root",
            )
        return resolved

    if not resolved.is_relative_to(base):
        raise ToolError(
            "PermissionDenied",
            f"path {file_path!r} resolves to {resolved}, which is outside base directory {base}",
        )
    return resolved


def _os_error_kind(exc: OSError) -> str:
    if isinstance(exc, PermissionError):
        return "PermissionDenied"
    if isinstance(exc, FileNotFoundError):
        return "NotFound"
    if isinstance(exc, (NotADirectoryError, FileExistsError)):
        return "NotADirectory"
    if isinstance(exc, IsADirectoryError):
        return "NotAFile"
    return "IOError"


def _make_parents(resolved: Path, file_path: str) -> None:
    try:
        resolved.parent.mkdir(parents=True, exist_ok=True)
    except (FileExistsError, NotADirectoryError):
        raise ToolError(
            "NotADirectory", f"an ancestor of {file_path} exists and is not a directory"
        )
    except PermissionError as exc:
        raise ToolError("PermissionDenied", str(exc))


# ---------------------------------------------------------------------------
# Filesystem tools
# ---------------------------------------------------------------------------


def _list_files(ctx: ToolContext, path: str) -> str:
    """List the immediate entries of a directory, directories suffixed with /."""
    resolved = safe_resolve(path, ctx.base_dir, ctx.unrestricted)
    if not resolved.exists():
        raise ToolError("NotFound", f"path does not exist: {path}")
    if not resolved.is_dir():
        raise ToolError("NotADirectory", f"not a directory: {path}")

    try:
        children = sorted(resolved.iterdir(), key=lambda c: c.name)
    except PermissionError as exc:
        raise ToolError("PermissionDenied", str(exc))

    if not children:
        return "(empty directory)"
    names = [c.name + ("/" if c.is_dir() else "") for c in children[:MAX_LIST_ENTRIES]]
    result = "\n".join(names)
    if len(children) > MAX_LIST_ENTRIES:
        result += f"\n[{len(children) - MAX_LIST_ENTRIES} more entries not shown]"
    return result


def _read_file(ctx: ToolContext, path: str) -> str:
    """Return the full text of a UTF-8 file."""
    resolved = safe_resolve(path, ctx.base_dir, ctx.unrestricted)
    if not resolved.exists():
        raise ToolError("NotFound", f"path does not exist: {path}")
    if not resolved.is_file():
        raise ToolError("NotAFile", f"not a regular file: {path}")

    try:
        data = resolved.read_bytes()
    except PermissionError as exc:
        raise ToolError("PermissionDenied", str(exc))

    if b"\x00" in data[:BINARY_CHECK_BYTES]:
        raise ToolError("DecodeError", f"binary file detected: {path}")
    try:
        text = data.decode("utf-8")
    except UnicodeDecodeError as exc:
        raise ToolError("DecodeError", f"failed to decode {path} as UTF-8: {exc}")

    if len(text) > MAX_READ_CHARS:
        text = (
            text[:MAX_READ_CHARS]
            + f"\n[truncated: showing {MAX_READ_CHARS} of {len(text)} characters]"
        )
    return text


def _create_directory(ctx: ToolContext, path: str) -> str:
    resolved = safe_resolve(path, ctx.base_dir, ctx.unrestricted)
    if resolved.is_dir():
        return f"Directory already exists: {path}"
    if resolved.exists():
        raise ToolError("AlreadyExists", f"path exists and is not a directory: {path}")
    try:
        resolved.mkdir(parents=True, exist_ok=True)
    except (FileExistsError, NotADirectoryError):
        raise ToolError(
            "NotADirectory", f"an ancestor of {path} exists and is not a directory"
        )
    except PermissionError as exc:
        raise ToolError("PermissionDenied", str(exc))
    return f"Directory created: {path}"


def _encode_text(content: str, path: str) -> bytes:
    try:
        return content.encode("utf-8")
    except UnicodeEncodeError as exc:
        raise ToolError("DecodeError", f"content for {path} is not valid UTF-8 text: {exc}")


def _write_file(ctx: ToolContext, path: str, content: str) -> str:
    """Create or overwrite a file, creating missing parent directories."""
    resolved = safe_resolve(path, ctx.base_dir, ctx.unrestricted)
    if resolved.is_dir():
        raise ToolError("NotAFile", f"path is a directory: {path}")
    _make_parents(resolved, path)

    data = _encode_text(content, path)
    try:
        resolved.write_bytes(data)
    except PermissionError as exc:
        raise ToolError("PermissionDenied", str(exc))
    except NotADirectoryError:
        raise ToolError(
            "NotADirectory", f"an ancestor of {path} exists and is not a directory"
        )
    return f"Wrote {len(data)} bytes to {path}"


def _atomic_write(resolved: Path, data: bytes) -> None:
    """Replace a file's content in one rename, keeping its permission bits."""
    mode = resolved.stat().st_mode & 0o7777
    fd, tmp_name = tempfile.mkstemp(prefix=f".{resolved.name}.", dir=resolved.parent)
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(data)
            f.flush()
            os.fsync(f.fileno())
        os.chmod(tmp_name, mode)
        os.replace(tmp_name, resolved)
    except BaseException:
        try:
            os.unlink(tmp_name)
        except OSError:
            pass
        raise


def _apply_search_replace(ctx: ToolContext, path: str, body: str) -> str:
    resolved = safe_resolve(path, ctx.base_dir, ctx.unrestricted)
    if not resolved.exists():
        raise ToolError("NotFound", f"path does not exist: {path}")
    if not resolved.is_file():
        raise ToolError("NotAFile", f"not a regular file: {path}")

    try:
        blocks = parse_blocks(body)
    except BlockFormatError as exc:
        raise ToolError("InvalidArguments", str(exc))

    try:
        original = resolved.read_bytes().decode("utf-8")
    except PermissionError as exc:
        raise ToolError("PermissionDenied", str(exc))
    except UnicodeDecodeError as exc:
        raise ToolError("DecodeError", f"failed to decode {path} as UTF-8: {exc}")

    try:
        updated = apply_blocks(original, blocks)
    except MatchError as exc:
        raise ToolError("AmbiguousMatch", f"{exc}; {path} was not modified")

    try:
        _atomic_write(resolved, _encode_text(updated, path))
    except PermissionError as exc:
        raise ToolError("PermissionDenied", str(exc))
    return f"Applied {len(blocks)} block(s) to {path}"


# ---------------------------------------------------------------------------
# Command execution
# ---------------------------------------------------------------------------

_KILL_WAIT_TIMEOUT = 5  # seconds to wait for process to die after kill signals


def _kill_process_tree(proc: subprocess.Popen) -> None:
    """Kill a process and its descendants, then wait for exit.

    On Unix, uses process groups (via start_new_session=True) to kill the
    entire tree. On Windows, uses taskkill /T /F to kill the process tree.
    """
    if sys.platform != "win32":
        import signal

        try:
            os.killpg(proc.pid, signal.SIGKILL)
        except OSError:
            pass  # already exited
    else:
        try:
            subprocess.run(
                ["taskkill", "/T", "/F", "/PID", str(proc.pid)],
                stdout=subprocess.DEVNULL,
                stderr=subprocess.DEVNULL,
                timeout=5,
            )
        except (OSError, subprocess.TimeoutExpired):
            pass  # best-effort
    try:
        proc.kill()
    except OSError:
        pass  # already dead
    try:
        proc.wait(timeout=_KILL_WAIT_TIMEOUT)
    except subprocess.TimeoutExpired:
        logger.warning("process %d did not exit after SIGKILL", proc.pid)


def _capture_process(proc: subprocess.Popen, timeout: int) -> str:
    """Collect combined output of a running process, enforcing a timeout."""
    output_chunks: list[bytes] = []
    output_total = 0
    output_truncated = False

    def _reader():
        nonlocal output_total, output_truncated
        try:
            while True:
                chunk = proc.stdout.read(4096)
                if not chunk:
                    break
                if output_truncated:
                    continue  # keep draining to prevent pipe backpressure
                remaining = MAX_COMMAND_OUTPUT - output_total
                output_chunks.append(chunk[:remaining])
                output_total += len(output_chunks[-1])
                if output_total >= MAX_COMMAND_OUTPUT:
                    output_truncated = True
        except (OSError, ValueError):
            pass  # pipe closed after kill

    reader_thread = threading.Thread(target=_reader, daemon=True)
    reader_thread.start()

    timed_out = False
    orphans_killed = False
    try:
        proc.wait(timeout=timeout)
    except subprocess.TimeoutExpired:
        timed_out = True
        _kill_process_tree(proc)
    except KeyboardInterrupt:
        _kill_process_tree(proc)
        raise
    finally:
        reader_thread.join(timeout=2)
        if reader_thread.is_alive():
            # A background child still holds the pipe open.
            orphans_killed = True
            _kill_process_tree(proc)
            reader_thread.join(timeout=2)
        proc.stdout.close()

    raw_output = b"".join(output_chunks).decode("utf-8", errors="replace")
    if output_truncated:
        raw_output += f"\n[output truncated at {MAX_COMMAND_OUTPUT // 1024}KB]"
    if orphans_killed and not timed_out:
        raw_output += "\n[background processes still holding the output were killed]"

    if timed_out:
        detail = f"command timed out after {timeout}s"
        if raw_output:
            detail += f"\n{raw_output}"
        raise ToolError("Timeout", detail)

    parts: list[str] = []
    if proc.returncode != 0:
        parts.append(f"Exit code: {proc.returncode}")
    parts.append(raw_output if raw_output else "(no output)")
    return "\n".join(parts)


def _run_command(ctx: ToolContext, command_line: str) -> str:
    """Run a shell command line in the base directory.

    A non-zero exit status is part of the normal output, not a failure.
    """
    if not command_line.strip():
        raise ToolError("InvalidArguments", "command line is empty")

    base_path = Path(ctx.base_dir)
    if not base_path.is_dir():
        raise ToolError("SpawnFailure", f"base directory is not a directory: {ctx.base_dir}")

    timeout = max(1, min(ctx.command_timeout, MAX_COMMAND_TIMEOUT))

    if sys.platform == "win32":
        shell_cmd = ["cmd.exe", "/c", command_line]
    else:
        shell_cmd = ["/bin/sh", "-c", command_line]

    popen_kwargs: dict = dict(
        stdout=subprocess.PIPE,
        stderr=subprocess.STDOUT,
        stdin=subprocess.DEVNULL,
        cwd=ctx.base_dir,
    )
    if sys.platform != "win32":
        popen_kwargs["start_new_session"] = True

    try:
        proc = subprocess.Popen(shell_cmd, **popen_kwargs)
    except OSError as e:
        raise ToolError("SpawnFailure", f"failed to start shell command: {e}")

    return _capture_process(proc, timeout)


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------

TOOL_SPECS: tuple[ToolSpec, ...] = (
    ToolSpec(
        name="list_files",
        params=("path",),
        usage="list the entries of a directory (non-recursive); subdirectories end with /",
        handler=_list_files,
    ),
    ToolSpec(
        name="read_file",
        params=("path",),
        usage="print the full text content of a file",
        handler=_read_file,
    ),
    ToolSpec(
        name="create_directory",
        params=("path",),
        usage="create a directory and any missing parents",
        handler=_create_directory,
    ),
    ToolSpec(
        name="write_file",
        params=("path", "content"),
        usage=(
            "create or overwrite a file, creating parent directories; the content is the "
            "rest of the line, or a heredoc body for multi-line content"
        ),
        handler=_write_file,
        rest=True,
        block=True,
    ),
    ToolSpec(
        name="apply_search_replace",
        params=("path", "blocks"),
        usage=(
            "edit a file with SEARCH/REPLACE blocks given as a heredoc body; each search "
            "text must match exactly once, otherwise nothing is changed"
        ),
        handler=_apply_search_replace,
        block=True,
    ),
    ToolSpec(
        name="run_command",
        params=("command",),
        usage=(
            "run the rest of the line with /bin/sh in the project directory and return "
            "its combined output and exit code"
        ),
        handler=_run_command,
        rest=True,
    ),
)

_REGISTRY: dict[str, ToolSpec] = {spec.name: spec for spec in TOOL_SPECS}


def get_spec(name: str) -> ToolSpec | None:
    return _REGISTRY.get(name)


def tool_names() -> list[str]:
    return [spec.name for spec in TOOL_SPECS]


def format_tool_usage() -> str:
    """One line per tool, for the system prompt."""
    width = max(len(spec.signature) for spec in TOOL_SPECS)
    return "\n".join(
        f"- {spec.signature.ljust(width)} : {spec.usage}" for spec in TOOL_SPECS
    )


# ---------------------------------------------------------------------------
# Execution
# ---------------------------------------------------------------------------


def cancelled_result(call: ToolCall, reason: str = "interrupted by user") -> ToolResult:
    return ToolResult(
        call_id=call.id,
        tool_name=call.name,
        ok=False,
        output=f"not executed: {reason}",
        error_kind="Cancelled",
    )


def execute_call(call: ToolCall, ctx: ToolContext) -> ToolResult:
    """Run one call. Failures become failing results; KeyboardInterrupt propagates."""
    if call.error is not None:
        return ToolResult(
            call_id=call.id,
            tool_name=call.name,
            ok=False,
            output=call.error,
            error_kind=call.error_kind or "ParseError",
        )

    spec = get_spec(call.name)
    if spec is None:
        return ToolResult(
            call_id=call.id,
            tool_name=call.name,
            ok=False,
            output=f"unknown tool {call.name!r}; available tools: {', '.join(tool_names())}",
            error_kind="UnknownTool",
        )

    t0 = time.monotonic()
    try:
        output = spec.handler(ctx, *call.args)
        ok, kind = True, None
    except ToolError as exc:
        output, ok, kind = exc.message, False, exc.kind
    except OSError as exc:
        output, ok, kind = str(exc), False, _os_error_kind(exc)
    except UnicodeError as exc:
        output, ok, kind = str(exc), False, "DecodeError"
    except ValueError as exc:
        output, ok, kind = str(exc), False, "InvalidArguments"
    elapsed = time.monotonic() - t0

    logger.debug("%s %r -> ok=%s in %.3fs", call.name, call.args, ok, elapsed)
    return ToolResult(
        call_id=call.id,
        tool_name=call.name,
        ok=ok,
        output=output,
        error_kind=kind,
        duration=elapsed,
    )


def execute_calls(
    calls,
    ctx: ToolContext,
    *,
    before: Callable[[ToolCall], None] | None = None,
    after: Callable[[ToolCall, ToolResult], None] | None = None,
) -> tuple[list[ToolResult], bool]:
    """Run calls strictly in order, one result per call.

    A Ctrl-C cancels the running call and every call after it.
    Returns (results, interrupted).
    """
    results: list[ToolResult] = []
    interrupted = False
    for call in calls:
        if interrupted:
            result = cancelled_result(call)
        else:
            if before is not None:
                before(call)
            try:
                result = execute_call(call, ctx)
            except KeyboardInterrupt:
                interrupted = True
                result = cancelled_result(call)
        results.append(result)
        if after is not None:
            after(call, result)
    return results, interrupted
