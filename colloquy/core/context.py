"""Context Window Manager -- bounded recent turns plus a rolling summary.

Each context build fetches the most recent turns for a conversation.
Once a conversation has ``summary_trigger`` stored turns, a summary
of the whole history is generated and stored; it is regenerated
after every further ``summary_trigger`` turns. Only the latest summary
is ever prefixed, as a single synthetic system turn.
"""

from __future__ import annotations

import logging

from colloquy.api.completion import SUMMARY, CompletionClient
from colloquy.config import Settings
from colloquy.core.locks import KeyLockManager
from colloquy.core.schemas import ConversationKey, Role, Summary, Turn
from colloquy.storage.store import ConversationStore
from colloquy.utils import excerpt

logger = logging.getLogger(__name__)

SUMMARY_PREFIX = "Previous conversation summary:\n"
# Upper bound on turns fed to one summarization call
MAX_SUMMARY_INPUT_TURNS = 100

SUMMARIZE_PROMPT = """\
Summarize the conversation below in a short paragraph. Keep the topics
discussed, facts the participants shared about themselves, open
questions and any preferences about how the assistant should answer.
Output ONLY the summary."""

UPDATE_PROMPT = """\
You are updating a conversation summary with new messages.
PRESERVE existing information unless the new messages supersede it,
ADD new topics and facts, and keep it to a short paragraph.
Output ONLY the updated summary."""


class ContextWindowManager:
    """Assembles prompt context and records finished exchanges."""

    def __init__(
        self,
        store: ConversationStore,
        completion: CompletionClient,
        locks: KeyLockManager,
        settings: Settings,
    ) -> None:
        self._store = store
        self._completion = completion
        self._locks = locks
        self._settings = settings

    async def get_context(self, key: ConversationKey, window_size: int | None = None) -> list[Turn]:
        """Recent turns for ``key`` in chronological order, summary first if any."""
        size = window_size or self._settings.context_window_size
        recent = await self._store.fetch_turns(key, size)
        turns = [t for t in reversed(recent) if not t.content.startswith("/")]
        turns = await self.enrich_replies(key, turns)

        summary = await self._current_summary(key)
        if summary is None:
            return turns
        return [Turn(role=Role.SYSTEM, content=SUMMARY_PREFIX + summary.text), *turns]

    async def record_exchange(self, key: ConversationKey, user_turn: Turn, assistant_turn: Turn) -> None:
        """Persist both sides of an exchange in one timed transaction.

        Raises TransactionTimeout if the write does not finish within
        ``transaction_timeout``; nothing is committed in that case.
        """

        async def _write(session) -> None:
            await self._store.append_turn(key, user_turn, session=session)
            await self._store.append_turn(key, assistant_turn, session=session)

        await self._store.db.run_in_transaction(_write, timeout=self._settings.transaction_timeout)

    # ------------------------------------------------------------------
    # Summaries
    # ------------------------------------------------------------------

    async def _current_summary(self, key: ConversationKey) -> Summary | None:
        """Latest summary, generating or regenerating it when due.

        Failures degrade to the previous summary (or none) instead of
        blocking the turn.
        """
        trigger = self._settings.summary_trigger
        latest: Summary | None = None
        try:
            count = await self._store.count_turns(key)
            if count < trigger:
                return None
            latest = await self._store.fetch_latest_summary(key)
            if latest is not None and count - latest.covered_turn_count < trigger:
                return latest
            return await self._locks.with_lock(
                f"summary|{key}", lambda: self._summarize(key, count, latest)
            )
        except Exception as e:
            logger.warning("Summarization for %s failed, continuing without it: %s", key, e)
            return latest

    async def _summarize(self, key: ConversationKey, count: int, previous: Summary | None) -> Summary:
        uncovered = count - (previous.covered_turn_count if previous else 0)
        recent = await self._store.fetch_turns(key, min(uncovered, MAX_SUMMARY_INPUT_TURNS))
        transcript = self._serialize_for_summary(list(reversed(recent)))

        if previous is not None:
            messages = [
                Turn(role=Role.SYSTEM, content=UPDATE_PROMPT),
                Turn(
                    role=Role.USER,
                    content=f"## Existing Summary\n{previous.text}\n\n## New Messages\n{transcript}",
                ),
            ]
        else:
            messages = [
                Turn(role=Role.SYSTEM, content=SUMMARIZE_PROMPT),
                Turn(role=Role.USER, content=transcript),
            ]

        text = await self._completion.complete(messages, SUMMARY)
        summary = Summary(text=text.strip(), covered_turn_count=count)
        await self._store.insert_summary(key, summary)
        logger.info(
            "Summarized %s: %d turns covered (%d new)", key, count, uncovered
        )
        return summary

    @staticmethod
    def _serialize_for_summary(turns: list[Turn]) -> str:
        lines = []
        for turn in turns:
            speaker = "User" if turn.role == Role.USER else "Assistant"
            if turn.role == Role.USER and turn.author_id:
                speaker = f"User {turn.author_id}"
            lines.append(f"{speaker}: {turn.content}")
        return "\n".join(lines)

    # ------------------------------------------------------------------
    # Reply references
    # ------------------------------------------------------------------

    async def enrich_replies(
        self, key: ConversationKey, turns: list[Turn], known: list[Turn] | None = None
    ) -> list[Turn]:
        """Prefix replies with a short quote of the turn they answer.

        The referenced turn is looked up among ``turns`` and ``known``
        first, then in the store.
        """
        by_origin = {t.origin_id: t for t in [*(known or []), *turns] if t.origin_id}
        enriched: list[Turn] = []
        for turn in turns:
            ref = turn.reply_to_origin_id
            if not ref:
                enriched.append(turn)
                continue

            referenced = by_origin.get(ref)
            if referenced is None:
                try:
                    referenced = await self._store.fetch_turn_by_origin(key, ref)
                except Exception as e:
                    logger.warning("Reply lookup for %s failed: %s", ref, e)
            if referenced is None:
                enriched.append(turn)
                continue

            quote = excerpt(referenced.content, self._settings.reply_excerpt_length)
            enriched.append(turn.model_copy(update={"content": f'[Replying to: "{quote}"]\n{turn.content}'}))
        return enriched
