"""Split large diff or README text into budget-sized chunks.

Boundaries are tried coarsest first: file (``diff --git``), hunk (``@@``),
line, and only then a hard cut inside an over-long line. Pieces are packed
greedily, so joining the chunks in order gives back the input exactly.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Iterator

from .repository import DiffRecord, split_lines


class ChunkError(Exception):
    """Error chunking text."""


class InvalidBudget(ChunkError):
    """Chunk budget must be a positive number of characters."""


@dataclass(frozen=True)
class TextChunk:
    sequence_index: int
    content: str
    source_ref: str
    truncated: bool = False  # holds a hard-cut piece of an over-long line


def chunk_text(text: str, source_ref: str, max_chars: int) -> list[TextChunk]:
    """Chunk ``text`` into pieces of at most ``max_chars`` characters."""
    if max_chars <= 0:
        raise InvalidBudget(f"max_chars must be positive, got {max_chars}")

    chunks: list[TextChunk] = []
    buf: list[str] = []
    size = 0
    truncated = False

    for piece, cut in _pieces(text, max_chars):
        if buf and size + len(piece) > max_chars:
            chunks.append(TextChunk(len(chunks), "".join(buf), source_ref, truncated))
            buf, size, truncated = [], 0, False
        buf.append(piece)
        size += len(piece)
        truncated = truncated or cut

    if buf:
        chunks.append(TextChunk(len(chunks), "".join(buf), source_ref, truncated))
    return chunks


def chunk_diff(diff: DiffRecord, max_chars: int) -> tuple[list[TextChunk], list[str]]:
    """Chunk the textual part of a diff. Binary files come back separately."""
    return chunk_text(diff.text, diff.commit_id, max_chars), diff.binary_paths


def _pieces(text: str, max_chars: int) -> Iterator[tuple[str, bool]]:
    """Yield (piece, was_hard_cut) with every piece within budget."""
    lines = split_lines(text)
    for file_lines in _split_before(lines, _is_file_header):
        file_text = "".join(file_lines)
        if len(file_text) <= max_chars:
            yield file_text, False
            continue
        for hunk_lines in _split_before(file_lines, _is_hunk_header):
            hunk_text = "".join(hunk_lines)
            if len(hunk_text) <= max_chars:
                yield hunk_text, False
                continue
            for line in hunk_lines:
                if len(line) <= max_chars:
                    yield line, False
                    continue
                for start in range(0, len(line), max_chars):
                    yield line[start:start + max_chars], True


def _split_before(lines: list[str], is_boundary: Callable[[str], bool]) -> list[list[str]]:
    groups: list[list[str]] = []
    for line in lines:
        if not groups or is_boundary(line):
            groups.append([])
        groups[-1].append(line)
    return groups


def _is_file_header(line: str) -> bool:
    return line.startswith("diff --git ")


def _is_hunk_header(line: str) -> bool:
    return line.startswith("@@")
