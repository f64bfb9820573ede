"""Telegram surface for Colloquy.

TelegramTransport implements the MessagingTransport contract on the
Bot API (forum topics serve as sessions, inline keyboards as approval
controls). TelegramDispatcher long-polls for updates and feeds them to
the Orchestrator one at a time, which serializes delivery per chat.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any

import httpx

from colloquy.core.orchestrator import Orchestrator
from colloquy.core.schemas import (
    ConversationKey,
    DeliveryTarget,
    MessageRef,
    SessionTarget,
    target_for,
)

logger = logging.getLogger(__name__)

# Telegram Bot API base
TG_API = "https://api.telegram.org/bot{token}/{method}"
SURFACE_ID = "telegram"

APPROVE_PREFIX = "approve:"
DENY_PREFIX = "deny:"
STALE_DECISION = "This request has expired or was already handled."


class TelegramError(RuntimeError):
    """The Bot API rejected a call."""


class TelegramTransport:
    """MessagingTransport over the Telegram Bot API."""

    def __init__(self, bot_token: str, http: httpx.AsyncClient | None = None) -> None:
        self.bot_token = bot_token
        self._http = http or httpx.AsyncClient(
            timeout=httpx.Timeout(connect=10, read=60, write=10, pool=10)
        )

    async def send(self, target: DeliveryTarget, content: str) -> MessageRef:
        params = self._target_params(target)
        params["text"] = content
        result = await self.call("sendMessage", params)
        return MessageRef(target=target, message_id=str(result["message_id"]))

    async def edit(self, ref: MessageRef, content: str) -> None:
        # Omitting reply_markup also removes any approval keyboard
        await self.call(
            "editMessageText",
            {"chat_id": ref.target.channel_id, "message_id": int(ref.message_id), "text": content},
        )

    async def send_with_approval_controls(
        self, target: DeliveryTarget, content: str, request_id: str
    ) -> MessageRef:
        params = self._target_params(target)
        params["text"] = content
        params["reply_markup"] = {
            "inline_keyboard": [
                [
                    {"text": "✅ Approve", "callback_data": f"{APPROVE_PREFIX}{request_id}"},
                    {"text": "❌ Deny", "callback_data": f"{DENY_PREFIX}{request_id}"},
                ]
            ]
        }
        result = await self.call("sendMessage", params)
        return MessageRef(target=target, message_id=str(result["message_id"]))

    async def open_session(self, channel_id: str, name: str) -> str:
        """Create a forum topic named ``name``; requires a forum supergroup."""
        result = await self.call("createForumTopic", {"chat_id": channel_id, "name": name[:128]})
        return str(result["message_thread_id"])

    async def answer_callback(self, callback_id: str, text: str | None = None) -> None:
        params: dict[str, Any] = {"callback_query_id": callback_id}
        if text:
            params["text"] = text
        await self.call("answerCallbackQuery", params)

    async def call(self, method: str, params: dict[str, Any] | None = None) -> Any:
        """Call a Bot API method; raise TelegramError unless the reply is ok."""
        url = TG_API.format(token=self.bot_token, method=method)
        response = await self._http.post(url, json=params or {})
        data = response.json()
        if not data.get("ok"):
            raise TelegramError(f"{method} failed: {data.get('description', data)}")
        return data.get("result")

    async def close(self) -> None:
        await self._http.aclose()

    @staticmethod
    def _target_params(target: DeliveryTarget) -> dict[str, Any]:
        params: dict[str, Any] = {"chat_id": target.channel_id}
        if isinstance(target, SessionTarget):
            params["message_thread_id"] = int(target.session_id)
        return params


class TelegramDispatcher:
    """Long-polls Telegram and hands updates to the Orchestrator."""

    def __init__(
        self,
        transport: TelegramTransport,
        orchestrator: Orchestrator,
        allowed_users: set[int] | None = None,
        poll_timeout: int = 30,
    ) -> None:
        self._transport = transport
        self._orchestrator = orchestrator
        self.allowed_users = allowed_users
        self._poll_timeout = poll_timeout
        self._offset = 0
        self._task: asyncio.Task | None = None

    async def start(self) -> None:
        """Start polling in the background."""
        me = await self._transport.call("getMe")
        logger.info("Bot started: @%s (%s)", me.get("username"), me.get("id"))
        self._task = asyncio.create_task(self._poll_loop(), name="telegram-poll")

    async def stop(self) -> None:
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

    async def _poll_loop(self) -> None:
        while True:
            try:
                updates = await self._transport.call(
                    "getUpdates",
                    {"offset": self._offset, "timeout": self._poll_timeout},
                )
                for update in updates or []:
                    self._offset = update["update_id"] + 1
                    await self.handle_update(update)
            except asyncio.CancelledError:
                break
            except httpx.ReadTimeout:
                continue  # Normal for long polling
            except Exception as e:
                logger.error("Polling error: %s", e)
                await asyncio.sleep(5)

    async def handle_update(self, update: dict[str, Any]) -> None:
        """Dispatch a single Telegram update."""
        if "callback_query" in update:
            await self._handle_callback(update["callback_query"])
            return

        message = update.get("message")
        if not message:
            return

        text = (message.get("text") or "").strip()
        sender = message.get("from", {})
        if not text:
            return

        key = self._conversation_key(message)
        if self.allowed_users and sender.get("id") not in self.allowed_users:
            await self._transport.send(target_for(key), "⛔ Not authorized.")
            return

        if text == "/start":
            await self._transport.send(target_for(key), "👋 Ready. Send me a message!")
            return

        reply_to = message.get("reply_to_message") or {}
        await self._orchestrator.handle_utterance(
            key,
            text,
            str(sender.get("id", "unknown")),
            origin_id=str(message["message_id"]),
            reply_to_origin_id=str(reply_to["message_id"]) if reply_to.get("message_id") else None,
            author_name=sender.get("username") or sender.get("first_name"),
        )

    async def _handle_callback(self, callback: dict[str, Any]) -> None:
        data = callback.get("data") or ""
        sender = callback.get("from", {})
        who = sender.get("username") or sender.get("first_name") or str(sender.get("id", "someone"))

        if self.allowed_users and sender.get("id") not in self.allowed_users:
            await self._transport.answer_callback(callback["id"], "⛔ Not authorized.")
            return

        if data.startswith(APPROVE_PREFIX):
            handled = await self._orchestrator.handle_approval(data[len(APPROVE_PREFIX) :], who)
        elif data.startswith(DENY_PREFIX):
            handled = await self._orchestrator.handle_denial(data[len(DENY_PREFIX) :], who)
        else:
            logger.debug("Ignoring callback data %r", data)
            handled = True

        await self._transport.answer_callback(callback["id"], None if handled else STALE_DECISION)

    @staticmethod
    def _conversation_key(message: dict[str, Any]) -> ConversationKey:
        chat_id = str(message["chat"]["id"])
        thread_id = message.get("message_thread_id")
        if message.get("is_topic_message") and thread_id:
            return ConversationKey(SURFACE_ID, chat_id, str(thread_id))
        return ConversationKey.for_channel(SURFACE_ID, chat_id)
