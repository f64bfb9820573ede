"""Outbound messaging contract the core talks to."""

from __future__ import annotations

from typing import Protocol

from colloquy.core.schemas import DeliveryTarget, MessageRef


class MessagingTransport(Protocol):
    """A size-limited chat transport (Telegram, a test recorder, ...)."""

    async def send(self, target: DeliveryTarget, content: str) -> MessageRef: ...

    async def edit(self, ref: MessageRef, content: str) -> None: ...

    async def send_with_approval_controls(
        self, target: DeliveryTarget, content: str, request_id: str
    ) -> MessageRef:
        """Post ``content`` with approve/deny controls bound to ``request_id``.

        Activations are reported back through the surface's dispatcher
        (``Orchestrator.handle_approval`` / ``handle_denial``) with the
        identity of whoever pressed the control.
        """
        ...

    async def open_session(self, channel_id: str, name: str) -> str:
        """Create a session (thread / topic) named ``name`` in ``channel_id``; return its id."""
        ...
