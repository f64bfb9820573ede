"""Shared utility functions for Colloquy."""

from __future__ import annotations

import re

_WHITESPACE = re.compile(r"\s+")
_EDGE_PUNCTUATION = "\"'`.,;:!?()[]{} "


def normalize_query(query: str) -> str:
    """Canonical form of a search query or prompt for deduplication.

    Lowercases, collapses runs of whitespace and strips surrounding
    quotes and punctuation, so "Weather in Tokyo?" and
    "  weather  in tokyo" share one dedupe key.
    """
    collapsed = _WHITESPACE.sub(" ", query.lower()).strip()
    return collapsed.strip(_EDGE_PUNCTUATION)


def excerpt(text: str, limit: int) -> str:
    """First ``limit`` characters of ``text`` on one line, with an ellipsis if cut."""
    flat = _WHITESPACE.sub(" ", text).strip()
    if len(flat) <= limit:
        return flat
    return flat[:limit].rstrip() + "..."
