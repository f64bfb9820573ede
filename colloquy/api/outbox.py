"""In-memory transport for the REST surface.

Replies are kept per delivery channel in a bounded outbox that HTTP
clients poll via ``GET /channels/{channel_key}/messages``. Used when
no Telegram token is configured.
"""

from __future__ import annotations

import itertools
import logging
import uuid
from collections import defaultdict, deque
from dataclasses import dataclass

from colloquy.core.schemas import DeliveryTarget, MessageRef

logger = logging.getLogger(__name__)

MAX_MESSAGES_PER_CHANNEL = 200


@dataclass
class OutboxMessage:
    message_id: str
    channel_key: str
    content: str
    approval_request_id: str | None = None
    edited: bool = False

    def to_dict(self) -> dict:
        return {
            "message_id": self.message_id,
            "content": self.content,
            "approval_request_id": self.approval_request_id,
            "edited": self.edited,
        }


class OutboxTransport:
    """MessagingTransport that stores outbound messages in memory."""

    def __init__(self, max_per_channel: int = MAX_MESSAGES_PER_CHANNEL) -> None:
        self._channels: dict[str, deque[OutboxMessage]] = defaultdict(lambda: deque(maxlen=max_per_channel))
        self._by_id: dict[str, OutboxMessage] = {}
        self._ids = itertools.count(1)

    async def send(self, target: DeliveryTarget, content: str) -> MessageRef:
        return self._append(target, content, None)

    async def edit(self, ref: MessageRef, content: str) -> None:
        message = self._by_id.get(ref.message_id)
        if message is None:
            raise KeyError(f"Unknown message {ref.message_id}")
        message.content = content
        message.approval_request_id = None
        message.edited = True

    async def send_with_approval_controls(
        self, target: DeliveryTarget, content: str, request_id: str
    ) -> MessageRef:
        return self._append(target, content, request_id)

    async def open_session(self, channel_id: str, name: str) -> str:
        session_id = uuid.uuid4().hex[:12]
        logger.info("Opened outbox session %s (%r) in %s", session_id, name, channel_id)
        return session_id

    def messages(self, channel_key: str) -> list[OutboxMessage]:
        """Messages delivered to ``channel_key``, oldest first."""
        return list(self._channels.get(channel_key, ()))

    def _append(self, target: DeliveryTarget, content: str, request_id: str | None) -> MessageRef:
        channel = self._channels[target.channel_key]
        if len(channel) == channel.maxlen:
            self._by_id.pop(channel[0].message_id, None)
        message = OutboxMessage(
            message_id=str(next(self._ids)),
            channel_key=target.channel_key,
            content=content,
            approval_request_id=request_id,
        )
        channel.append(message)
        self._by_id[message.message_id] = message
        return MessageRef(target=target, message_id=message.message_id)
