"""Detect utterances that need a side-effecting action (search or generation).

Primary path asks the completion service; if that call fails the
pure ``fallback_detect`` approximates the same decision with regex
families. ``IntentDetector.detect`` never raises.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass

from colloquy.api.completion import DETERMINISTIC, EXTRACTION, CompletionClient
from colloquy.core.schemas import ActionKind, Role, Turn

logger = logging.getLogger(__name__)

MIN_ACTION_LENGTH = 3

CLASSIFY_PROMPT = """You decide whether a chat message needs an action before it can be answered well.

Answer "search" if the message asks for current events, news, prices, weather, scores or other time-sensitive facts, or explicitly asks you to look something up.
Answer "generate" if the message asks you to draw, create or generate an image, picture or illustration.
Otherwise answer "no".

Respond with ONLY one word: search, generate or no.

Message: {utterance}"""

SEARCH_QUERY_PROMPT = """Write a concise web search query that finds the most current information needed to answer this message.
Drop pleasantries and context that does not help the search. Do not add a year unless the message names one.
Respond with ONLY the query text.

Message: {utterance}"""

GENERATION_PROMPT = """Extract what the user wants drawn from this message.
Respond with ONLY this JSON: {{"prompt": "what to depict", "style": "requested style or null"}}

Message: {utterance}"""


@dataclass(frozen=True)
class Intent:
    """Whether an utterance needs an action, and which."""

    needs_action: bool
    kind: ActionKind | None = None
    query: str | None = None
    reason: str | None = None
    style: str | None = None
    source: str = "model"  # "model" or "fallback"


NO_ACTION = Intent(needs_action=False)


# ---------------------------------------------------------------------------
# Fallback heuristics
# ---------------------------------------------------------------------------

# Recency / lookup phrasing that suggests a search
_SEARCH_INDICATORS = [
    re.compile(r"\b(current(ly)?|latest|recent(ly)?|news|today|tonight|yesterday)\b", re.IGNORECASE),
    re.compile(r"\b(right now|this (week|month|year)|at the moment)\b", re.IGNORECASE),
    re.compile(r"\b(look up|search|google)\b", re.IGNORECASE),
    re.compile(r"\b(weather|forecast|stock price|exchange rate|score)\b", re.IGNORECASE),
]

_SEARCH_EXTRACTORS = [
    re.compile(
        r"(?:can you |could you |please )?(?:search|look up|google)(?: for| about)? (.*?)(?:[.?!]|$)",
        re.IGNORECASE,
    ),
    re.compile(r"\b(?:what|who|where|when|why|how)(?:'s| is| are| was| were) (.*?)(?:[.?!]|$)", re.IGNORECASE),
    re.compile(r"(?:tell me about|find information on|get details on) (.*?)(?:[.?!]|$)", re.IGNORECASE),
    re.compile(
        r"(?:I want to know|I need to know|I'd like to know) (?:more about |about )?(.*?)(?:[.?!]|$)",
        re.IGNORECASE,
    ),
]

_GENERATION_INDICATORS = [
    re.compile(r"\b(draw|sketch|paint|illustrate)\b", re.IGNORECASE),
    re.compile(
        r"\b(generate|create|make|design)\b.{0,20}\b(image|picture|drawing|illustration|logo|art)\b",
        re.IGNORECASE,
    ),
]

_GENERATION_EXTRACTORS = [
    re.compile(r"\b(?:draw|sketch|paint|illustrate)(?: me)? (.*?)(?:[.?!]|$)", re.IGNORECASE),
    re.compile(
        r"\b(?:image|picture|drawing|illustration|logo|art) (?:of|showing|with) (.*?)(?:[.?!]|$)",
        re.IGNORECASE,
    ),
]

_STYLE_WORDS = re.compile(
    r"\b(?:in (?:an? )?)?(realistic|cartoon|anime|painting|sketch|pixel)(?: art| style)?\b",
    re.IGNORECASE,
)


def _first_group(patterns: list[re.Pattern[str]], text: str) -> str | None:
    for pattern in patterns:
        match = pattern.search(text)
        if match and match.group(1).strip():
            return match.group(1).strip()
    return None


def fallback_detect(utterance: str) -> Intent:
    """Regex approximation of the model's decision. Pure; never raises."""
    text = utterance.strip()
    if len(text) < MIN_ACTION_LENGTH:
        return NO_ACTION

    if any(p.search(text) for p in _GENERATION_INDICATORS):
        prompt = _first_group(_GENERATION_EXTRACTORS, text) or text
        style_match = _STYLE_WORDS.search(prompt)
        style = style_match.group(1).lower() if style_match else None
        return Intent(
            needs_action=True,
            kind=ActionKind.GENERATE,
            query=prompt,
            reason=f"User asked for an image of: {prompt}",
            style=style,
            source="fallback",
        )

    if any(p.search(text) for p in _SEARCH_INDICATORS):
        topic = _first_group(_SEARCH_EXTRACTORS, text)
        if topic:
            return Intent(
                needs_action=True,
                kind=ActionKind.SEARCH,
                query=topic,
                reason=f"User asked about current information regarding: {topic}",
                source="fallback",
            )

    return Intent(needs_action=False, source="fallback")


# ---------------------------------------------------------------------------
# Detector
# ---------------------------------------------------------------------------


class IntentDetector:
    """Classifies utterances with the completion service, falling back to regex."""

    def __init__(self, completion: CompletionClient) -> None:
        self._completion = completion

    async def detect(self, utterance: str) -> Intent:
        """Decide whether ``utterance`` needs an action. Never raises."""
        if len(utterance.strip()) < MIN_ACTION_LENGTH:
            return NO_ACTION
        try:
            return await self._detect_with_model(utterance)
        except Exception as e:
            logger.warning("Intent classification failed, using fallback: %s", e)
            return fallback_detect(utterance)

    async def _detect_with_model(self, utterance: str) -> Intent:
        answer = await self._completion.complete(
            [Turn(role=Role.USER, content=CLASSIFY_PROMPT.format(utterance=utterance))],
            DETERMINISTIC,
        )
        label = answer.strip().strip(".\"'").lower()

        if label == ActionKind.SEARCH:
            query = await self._completion.complete(
                [Turn(role=Role.USER, content=SEARCH_QUERY_PROMPT.format(utterance=utterance))],
                EXTRACTION,
            )
            query = query.strip().strip("\"'") or utterance
            return Intent(
                needs_action=True,
                kind=ActionKind.SEARCH,
                query=query,
                reason=f"User asked about information that may require a search: {utterance}",
            )

        if label == ActionKind.GENERATE:
            raw = await self._completion.complete(
                [Turn(role=Role.USER, content=GENERATION_PROMPT.format(utterance=utterance))],
                EXTRACTION,
            )
            prompt, style = _parse_generation(raw, utterance)
            return Intent(
                needs_action=True,
                kind=ActionKind.GENERATE,
                query=prompt,
                reason=f"User asked for an image of: {prompt}",
                style=style,
            )

        if label not in ("no", "none", "false"):
            logger.debug("Unexpected classification %r, treating as no action", answer)
        return NO_ACTION


def _parse_generation(raw: str, utterance: str) -> tuple[str, str | None]:
    """Pull prompt and style out of the extraction reply; raw text if not JSON."""
    try:
        data = json.loads(raw)
    except ValueError:
        return raw.strip() or utterance, None
    if not isinstance(data, dict):
        return raw.strip() or utterance, None
    prompt = str(data.get("prompt") or "").strip() or utterance
    style = data.get("style")
    if not style or str(style).lower() in ("null", "none"):
        style = None
    return prompt, style
