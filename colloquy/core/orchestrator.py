"""Orchestrator -- drives one inbound utterance from arrival to persistence.

    utterance -> Intent Detector -> (approval, when an action is needed)
              -> Context Window Manager -> completion -> chunker
              -> transport -> record exchange

``handle_utterance`` never raises: every failure becomes exactly one
chunked reply on the originating channel, carrying a short reference
id that also appears in the logs.
"""

from __future__ import annotations

import logging
from collections import OrderedDict
from dataclasses import dataclass
from uuid import uuid4

from colloquy.api.completion import CREATIVE, CompletionClient
from colloquy.config import Settings
from colloquy.core.approval import ActionApprovalManager, TooManyPendingActions
from colloquy.core.chunker import chunk_message
from colloquy.core.context import ContextWindowManager
from colloquy.core.intent import Intent, IntentDetector
from colloquy.core.locks import KeyLockManager
from colloquy.core.schemas import (
    ActionKind,
    ActionResult,
    ConversationKey,
    DeliveryTarget,
    MessageRef,
    RequestStatus,
    Role,
    SessionTarget,
    Turn,
    target_for,
)
from colloquy.core.transport import MessagingTransport
from colloquy.storage.database import TransactionTimeout

logger = logging.getLogger(__name__)

MAX_SESSIONS = 1000

APOLOGY = "Sorry, something went wrong while handling your message. (ref {ref})"
SAVE_FAILED = (
    "⚠️ I couldn't save this exchange (ref {ref}), so it won't be remembered. "
    "Your message was:\n> {text}\nPlease try sending it again."
)
DUPLICATE_REQUEST = (
    "I've already asked to {verb} \"{query}\" here. Please approve or deny that request first."
)
DENIED_FALLBACK = "I'll do my best to help based on my existing knowledge!"
ACTION_RESULT_PROMPT = (
    'Web search results for "{query}":\n\n{results}\n\n'
    "Use these results to answer the user's latest message. Mention sources when useful."
)


class UtteranceRejected(ValueError):
    """The utterance cannot be handled as sent; the message is shown to the user."""


@dataclass
class Exchange:
    """An utterance in flight, kept as PendingAction origin while approval is pending."""

    key: ConversationKey
    target: DeliveryTarget
    user_turn: Turn
    ref: str


class Orchestrator:
    """Top-level driver for inbound utterances and approval decisions."""

    def __init__(
        self,
        settings: Settings,
        transport: MessagingTransport,
        intents: IntentDetector,
        approvals: ActionApprovalManager,
        context: ContextWindowManager,
        completion: CompletionClient,
        locks: KeyLockManager,
    ) -> None:
        self._settings = settings
        self._transport = transport
        self._intents = intents
        self._approvals = approvals
        self._context = context
        self._completion = completion
        self._locks = locks
        # "channel|session name" -> session id, LRU
        self._sessions: OrderedDict[str, str] = OrderedDict()

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    async def handle_utterance(
        self,
        key: ConversationKey,
        text: str,
        author_id: str,
        *,
        origin_id: str | None = None,
        reply_to_origin_id: str | None = None,
        author_name: str | None = None,
    ) -> None:
        """Process one inbound utterance end to end. Never raises."""
        ref = uuid4().hex[:8]
        target = target_for(key)
        logger.info("[%s] Utterance on %s from %s", ref, key, author_id)
        try:
            content = self._validate(text)
            key, target = await self._resolve_target(key, author_name or author_id)
            exchange = Exchange(
                key=key,
                target=target,
                user_turn=Turn(
                    role=Role.USER,
                    content=content,
                    origin_id=origin_id,
                    author_id=author_id,
                    reply_to_origin_id=reply_to_origin_id,
                ),
                ref=ref,
            )

            intent = await self._intents.detect(content)
            if intent.needs_action and intent.kind and intent.query:
                if await self._request_action(exchange, intent.kind, intent.query, intent):
                    return
            await self._answer(exchange)
        except Exception as e:
            await self._report_failure(target, ref, e, text)

    async def handle_approval(self, request_id: str, approver: str) -> bool:
        """Approve a pending action and answer the utterance that asked for it.

        Returns False when the action had already expired or been handled.
        """
        pending = self._approvals.get_pending(request_id)
        exchange = pending.origin if pending is not None else None
        try:
            result = await self._approvals.approve(request_id, approver)
        except Exception as e:
            if isinstance(exchange, Exchange):
                await self._report_failure(exchange.target, exchange.ref, e, exchange.user_turn.content)
            else:
                logger.exception("Approved action %s failed", request_id)
            return True

        if result is None:
            return False
        if isinstance(exchange, Exchange):
            try:
                await self._answer(exchange, result)
            except Exception as e:
                await self._report_failure(exchange.target, exchange.ref, e, exchange.user_turn.content)
        return True

    async def handle_denial(self, request_id: str, denier: str) -> bool:
        """Deny a pending action and answer from existing knowledge instead.

        Returns False when the action had already expired or been handled.
        """
        pending = self._approvals.get_pending(request_id)
        exchange = pending.origin if pending is not None else None
        if not await self._approvals.deny(request_id, denier):
            return False

        if isinstance(exchange, Exchange):
            try:
                await self._deliver(exchange.target, DENIED_FALLBACK)
                await self._answer(exchange)
            except Exception as e:
                await self._report_failure(exchange.target, exchange.ref, e, exchange.user_turn.content)
        return True

    # ------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------

    def _validate(self, text: str) -> str:
        content = text.strip()
        if not content:
            raise UtteranceRejected("Please include a message.")
        if len(content) > self._settings.max_utterance_length:
            raise UtteranceRejected(
                f"That message is too long ({len(content)} characters). "
                f"Please keep it under {self._settings.max_utterance_length}."
            )
        return content

    async def _resolve_target(
        self, key: ConversationKey, author_label: str
    ) -> tuple[ConversationKey, DeliveryTarget]:
        """Pick the delivery target once per exchange, opening a session if configured."""
        if self._settings.delivery_mode != "session" or not key.is_channel_level:
            return key, target_for(key)

        name = self._settings.session_name_template.format(author=author_label)
        session_key = f"{key.channel_id}|{name}"
        session_id = self._sessions.get(session_key)
        if session_id is None:
            session_id = await self._locks.with_lock(
                session_key, lambda: self._open_session(session_key, key.channel_id, name)
            )
        else:
            self._sessions.move_to_end(session_key)
        return key.with_session(session_id), SessionTarget(key.channel_id, session_id)

    async def _open_session(self, session_key: str, channel_id: str, name: str) -> str:
        existing = self._sessions.get(session_key)
        if existing is not None:
            return existing
        session_id = await self._transport.open_session(channel_id, name)
        self._sessions[session_key] = session_id
        if len(self._sessions) > MAX_SESSIONS:
            self._sessions.popitem(last=False)
        logger.info("Opened session %s (%r) in channel %s", session_id, name, channel_id)
        return session_id

    async def _request_action(
        self, exchange: Exchange, kind: ActionKind, query: str, intent: Intent
    ) -> bool:
        """Route an action intent through approval; True if nothing more to do now."""
        try:
            outcome = await self._approvals.request(
                exchange.target.channel_key,
                kind,
                query,
                intent.reason or "",
                target=exchange.target,
                style=intent.style,
                origin=exchange,
            )
        except TooManyPendingActions:
            logger.warning("[%s] Approval queue full, answering without %s", exchange.ref, kind)
            return False

        if outcome.status is RequestStatus.PENDING:
            logger.info("[%s] Waiting on approval %s", exchange.ref, outcome.request_id)
            return True
        if outcome.status is RequestStatus.DUPLICATE:
            verb = "search for" if kind == ActionKind.SEARCH else "generate"
            await self._deliver(exchange.target, DUPLICATE_REQUEST.format(verb=verb, query=query))
            return True

        await self._answer(exchange, outcome.result)
        return True

    async def _answer(self, exchange: Exchange, result: ActionResult | None = None) -> None:
        """Produce, deliver and record the assistant's reply to ``exchange``."""
        if result is not None and result.kind == ActionKind.GENERATE:
            reply = f'🎨 Here is the image for "{result.query}":\n{result.output_artifact_ref}'
        else:
            history = await self._context.get_context(exchange.key)
            [prompt_turn] = await self._context.enrich_replies(
                exchange.key, [exchange.user_turn], known=history
            )
            messages = [Turn(role=Role.SYSTEM, content=self._settings.system_prompt), *history]
            if result is not None:
                messages.append(
                    Turn(
                        role=Role.SYSTEM,
                        content=ACTION_RESULT_PROMPT.format(query=result.query, results=result.output_text),
                    )
                )
            messages.append(prompt_turn)
            reply = (await self._completion.complete(messages, CREATIVE)).strip()

        refs = await self._deliver(exchange.target, reply)
        await self._context.record_exchange(
            exchange.key,
            exchange.user_turn,
            Turn(role=Role.ASSISTANT, content=reply, origin_id=refs[0].message_id if refs else None),
        )
        logger.info("[%s] Exchange recorded on %s", exchange.ref, exchange.key)

    async def _deliver(self, target: DeliveryTarget, text: str) -> list[MessageRef]:
        refs = []
        for chunk in chunk_message(text, self._settings.chunk_max_length):
            refs.append(await self._transport.send(target, chunk))
        return refs

    async def _report_failure(self, target: DeliveryTarget, ref: str, error: Exception, text: str) -> None:
        """Send the single user-visible reply for a failed exchange."""
        if isinstance(error, UtteranceRejected):
            logger.info("[%s] Utterance rejected: %s", ref, error)
            message = str(error)
        elif isinstance(error, TransactionTimeout):
            logger.error("[%s] Exchange not saved: %s", ref, error)
            message = SAVE_FAILED.format(ref=ref, text=text.strip())
        else:
            logger.error("[%s] Exchange failed", ref, exc_info=error)
            message = APOLOGY.format(ref=ref)

        try:
            await self._deliver(target, message)
        except Exception as e:
            logger.error("[%s] Could not deliver failure notice to %s: %s", ref, target, e)
