"""Search/replace engine for the apply_search_replace tool.

A body holds one or more blocks::

    <<<<<<< SEARCH
    text to find
    =======
    replacement text
    >>>>>>> REPLACE

Blocks are applied in order, each against the content produced by the
blocks before it. Each search text must occur exactly once at that point.
"""

from __future__ import annotations

SEARCH_MARKER = "<<<<<<< SEARCH"
DIVIDER_MARKER = "======="
REPLACE_MARKER = ">>>>>>> REPLACE"


class BlockFormatError(ValueError):
    """The body could not be split into SEARCH/REPLACE blocks."""


class MatchError(ValueError):
    """A search text matched zero times or more than once."""

    def __init__(self, index: int, count: int):
        self.index = index
        self.count = count
        if count == 0:
            detail = "not found"
        else:
            detail = f"found {count} times, must be unique"
        super().__init__(f"block {index}: search text {detail}")


def parse_blocks(body: str) -> list[tuple[str, str]]:
    """Split a body into (search, replace) pairs.

    Raises BlockFormatError on a missing marker, an empty search text,
    or stray text outside blocks.
    """
    blocks: list[tuple[str, str]] = []
    state = "outside"
    search_lines: list[str] = []
    replace_lines: list[str] = []

    for lineno, line in enumerate(body.split("\n"), start=1):
        marker = line.strip()
        if state == "outside":
            if marker == SEARCH_MARKER:
                state = "search"
                search_lines, replace_lines = [], []
            elif marker:
                raise BlockFormatError(
                    f"line {lineno}: expected {SEARCH_MARKER!r}, got {line!r}"
                )
        elif state == "search":
            if marker == DIVIDER_MARKER:
                state = "replace"
            elif marker in (SEARCH_MARKER, REPLACE_MARKER):
                raise BlockFormatError(
                    f"line {lineno}: expected {DIVIDER_MARKER!r} before {marker!r}"
                )
            else:
                search_lines.append(line)
        else:
            if marker == REPLACE_MARKER:
                search = "\n".join(search_lines)
                if not search:
                    raise BlockFormatError(
                        f"block {len(blocks) + 1}: search text must not be empty"
                    )
                blocks.append((search, "\n".join(replace_lines)))
                state = "outside"
            elif marker == SEARCH_MARKER:
                raise BlockFormatError(
                    f"line {lineno}: expected {REPLACE_MARKER!r} before a new block"
                )
            else:
                replace_lines.append(line)

    if state != "outside":
        raise BlockFormatError(f"unterminated block, expected {REPLACE_MARKER!r}")
    if not blocks:
        raise BlockFormatError("no SEARCH/REPLACE blocks found")
    return blocks


def replace(content: str, search: str, replacement: str, index: int = 1) -> str:
    """Replace the single occurrence of ``search`` in ``content``.

    Raises MatchError if ``search`` occurs zero or several times.
    """
    first = content.find(search)
    if first == -1:
        raise MatchError(index, 0)
    if content.find(search, first + 1) != -1:
        raise MatchError(index, _count_overlapping(content, search, first))
    return content[:first] + replacement + content[first + len(search):]


def _count_overlapping(content: str, search: str, start: int) -> int:
    count = 0
    pos = start
    while pos != -1:
        count += 1
        pos = content.find(search, pos + 1)
    return count


def apply_blocks(content: str, blocks: list[tuple[str, str]]) -> str:
    """Apply every block in order; nothing is returned unless all succeed."""
    for i, (search, replacement) in enumerate(blocks, start=1):
        content = replace(content, search, replacement, index=i)
    return content
