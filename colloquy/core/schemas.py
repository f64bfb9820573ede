"""Shared types for the orchestration core.

Pydantic DTOs for data that crosses the REST surface or the store
(Turn, Summary, ActionResult); frozen dataclasses for keys and
delivery targets; a mutable dataclass for PendingAction, whose status
is the one field the approval manager changes.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, Field

CHANNEL_THREAD_PREFIX = "channel-"


class Role(StrEnum):
    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"


class ActionKind(StrEnum):
    SEARCH = "search"
    GENERATE = "generate"


class ActionStatus(StrEnum):
    REQUESTED = "requested"
    APPROVED = "approved"
    DENIED = "denied"
    EXPIRED = "expired"


@dataclass(frozen=True)
class ConversationKey:
    """Identifies one logical conversation: surface, channel, thread or session."""

    surface_id: str
    channel_id: str
    thread_id: str

    @classmethod
    def for_channel(cls, surface_id: str, channel_id: str) -> ConversationKey:
        """Key for a conversation held directly in a channel (no thread)."""
        return cls(surface_id, channel_id, f"{CHANNEL_THREAD_PREFIX}{channel_id}")

    @property
    def is_channel_level(self) -> bool:
        return self.thread_id == f"{CHANNEL_THREAD_PREFIX}{self.channel_id}"

    def with_session(self, session_id: str) -> ConversationKey:
        return ConversationKey(self.surface_id, self.channel_id, session_id)

    def __str__(self) -> str:
        return f"{self.surface_id}:{self.channel_id}:{self.thread_id}"


@dataclass(frozen=True)
class ChannelTarget:
    """Deliver straight into a channel."""

    channel_id: str

    @property
    def channel_key(self) -> str:
        return self.channel_id


@dataclass(frozen=True)
class SessionTarget:
    """Deliver into a session (thread / forum topic) inside a channel."""

    channel_id: str
    session_id: str

    @property
    def channel_key(self) -> str:
        return self.session_id


DeliveryTarget = ChannelTarget | SessionTarget


def target_for(key: ConversationKey) -> DeliveryTarget:
    """The delivery target implied by a conversation key as-is."""
    if key.is_channel_level:
        return ChannelTarget(key.channel_id)
    return SessionTarget(key.channel_id, key.thread_id)


@dataclass(frozen=True)
class MessageRef:
    """Opaque handle to a message the transport has sent (for later edits)."""

    target: DeliveryTarget
    message_id: str


class Turn(BaseModel):
    """One message in a conversation."""

    role: Role
    content: str
    origin_id: str | None = None
    author_id: str | None = None
    reply_to_origin_id: str | None = None


class Summary(BaseModel):
    """Rolling summary of a conversation's older turns."""

    text: str
    covered_turn_count: int
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))


class ActionResult(BaseModel):
    """Output of an executed side-effecting action."""

    request_id: str
    kind: ActionKind
    query: str
    output_text: str | None = None
    output_artifact_ref: str | None = None
    produced_at: float


@dataclass
class PendingAction:
    """An approval-gated action awaiting a human decision."""

    request_id: str
    kind: ActionKind
    query: str
    reason: str
    channel_key: str
    dedupe_key: str
    created_at: float
    target: DeliveryTarget
    style: str | None = None
    status: ActionStatus = ActionStatus.REQUESTED
    prompt_ref: MessageRef | None = None
    origin: Any = None


class RequestStatus(StrEnum):
    PENDING = "pending"
    DUPLICATE = "duplicate"
    EXECUTED = "executed"


@dataclass
class RequestOutcome:
    """What ``ActionApprovalManager.request`` did with a request."""

    status: RequestStatus
    request_id: str | None = None
    result: ActionResult | None = None
