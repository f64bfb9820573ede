"""Split long replies into transport-safe segments.

Greedy packing at decreasing granularity: paragraphs, then sentences,
then whitespace-delimited words, then raw character slices. Units keep
their separators, so the bodies of the chunks concatenate back to the
original text exactly. Multi-chunk output carries a trailing
``(i/n)`` marker on every chunk.

Pure and deterministic: no I/O, no clock, no randomness.
"""

from __future__ import annotations

import re

DEFAULT_MAX_LENGTH = 1900

_PARAGRAPH_BREAK = re.compile(r"\n[ \t]*\n\s*")
_SENTENCE_BREAK = re.compile(r"[.!?]+[\"')\]]*\s+")
_WORD_BREAK = re.compile(r"\s+")
_PART_MARKER = re.compile(r"\n\((\d+)/(\d+)\)\Z")


def _marker(index: int, total: int) -> str:
    return f"\n({index}/{total})"


def _split_keep(text: str, separator: re.Pattern[str]) -> list[str]:
    """Split after each separator match, keeping the separator on the left piece."""
    pieces: list[str] = []
    start = 0
    for match in separator.finditer(text):
        if match.end() > start:
            pieces.append(text[start : match.end()])
            start = match.end()
    if start < len(text):
        pieces.append(text[start:])
    return pieces


_GRANULARITIES = (_PARAGRAPH_BREAK, _SENTENCE_BREAK, _WORD_BREAK)


def _units(text: str, budget: int, level: int = 0) -> list[str]:
    """Break ``text`` into units no longer than ``budget``, coarsest first."""
    if len(text) <= budget:
        return [text]
    if level >= len(_GRANULARITIES):
        return [text[i : i + budget] for i in range(0, len(text), budget)]

    units: list[str] = []
    for piece in _split_keep(text, _GRANULARITIES[level]):
        if len(piece) <= budget:
            units.append(piece)
        else:
            units.extend(_units(piece, budget, level + 1))
    return units


def _pack(text: str, budget: int) -> list[str]:
    chunks: list[str] = []
    current = ""
    for unit in _units(text, budget):
        if current and len(current) + len(unit) > budget:
            chunks.append(current)
            current = unit
        else:
            current += unit
    if current:
        chunks.append(current)
    return chunks


def chunk_message(
    text: str,
    max_length: int = DEFAULT_MAX_LENGTH,
    prefix: str = "",
    *,
    part_markers: bool = True,
) -> list[str]:
    """Split ``text`` into chunks of at most ``max_length`` characters.

    Every chunk starts with ``prefix`` and the prefix counts toward the
    limit. When more than one chunk results and ``part_markers`` is set,
    each chunk ends with ``\\n(i/n)``; room for the widest marker is
    reserved up front. If the markers would eat more than half of each
    chunk (tiny limits), they are left off rather than breaking the bound.

    Raises:
        ValueError: ``max_length`` is below 1 or ``prefix`` leaves no room.
    """
    if max_length < 1:
        raise ValueError(f"max_length must be >= 1, got {max_length}")
    capacity = max_length - len(prefix)
    if capacity < 1:
        raise ValueError(f"prefix of {len(prefix)} chars leaves no room in {max_length}")

    if len(text) <= capacity:
        return [prefix + text]

    bodies = _pack(text, capacity)
    if not part_markers:
        return [prefix + body for body in bodies]

    total = len(bodies)
    while True:
        reserve = len(_marker(total, total))
        budget = capacity - reserve
        if budget < reserve:
            return [prefix + body for body in _pack(text, capacity)]
        bodies = _pack(text, budget)
        if len(str(len(bodies))) <= len(str(total)):
            break
        total = len(bodies)

    total = len(bodies)
    return [prefix + body + _marker(i, total) for i, body in enumerate(bodies, start=1)]


def join_chunks(chunks: list[str], prefix: str = "") -> str:
    """Reassemble ``chunk_message`` output, ordering by part marker when present."""
    numbered: list[tuple[int, str]] = []
    for position, chunk in enumerate(chunks):
        body = chunk[len(prefix) :] if prefix and chunk.startswith(prefix) else chunk
        match = _PART_MARKER.search(body) if len(chunks) > 1 else None
        if match:
            numbered.append((int(match.group(1)), body[: match.start()]))
        else:
            numbered.append((position + 1, body))
    return "".join(body for _, body in sorted(numbered, key=lambda item: item[0]))
