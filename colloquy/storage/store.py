"""Conversation store: turns and rolling summaries per conversation key.

Every public method accepts an optional session for transaction
injection. Without one it opens its own session and commits.
"""

from __future__ import annotations

import logging

from sqlalchemy import func, select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession

from colloquy.core.schemas import ConversationKey, Role, Summary, Turn
from colloquy.storage.database import Database
from colloquy.storage.models import Conversation, SummaryRecord, TurnRecord

logger = logging.getLogger(__name__)


class ConversationStore:
    """Durable record of conversations, turns and summaries."""

    def __init__(self, database: Database) -> None:
        self.db = database

    # ------------------------------------------------------------------
    # conversations
    # ------------------------------------------------------------------

    async def get_or_create_conversation(
        self, key: ConversationKey, session: AsyncSession | None = None
    ) -> int:
        """Return the conversation id for ``key``, inserting the row on first use."""
        if session is None:
            async with self.db.session() as session:
                conversation_id = await self._get_or_create_conversation(key, session)
                await session.commit()
                return conversation_id
        return await self._get_or_create_conversation(key, session)

    async def _get_or_create_conversation(self, key: ConversationKey, session: AsyncSession) -> int:
        existing = await self._find_conversation(key, session)
        if existing is not None:
            return existing

        # Concurrent first exchanges race here; the losing insert is a no-op
        insert = pg_insert if self.db.engine.dialect.name == "postgresql" else sqlite_insert
        stmt = (
            insert(Conversation)
            .values(
                surface_id=key.surface_id,
                channel_id=key.channel_id,
                thread_id=key.thread_id,
            )
            .on_conflict_do_nothing(index_elements=["surface_id", "channel_id", "thread_id"])
        )
        result = await session.execute(stmt)
        await session.flush()

        conversation_id = await self._find_conversation(key, session)
        if conversation_id is None:
            raise RuntimeError(f"Conversation row for {key} missing after insert")
        if result.rowcount:
            logger.info("Created conversation %d for %s", conversation_id, key)
        return conversation_id

    async def _find_conversation(self, key: ConversationKey, session: AsyncSession) -> int | None:
        result = await session.execute(
            select(Conversation.id).where(
                Conversation.surface_id == key.surface_id,
                Conversation.channel_id == key.channel_id,
                Conversation.thread_id == key.thread_id,
            )
        )
        return result.scalar_one_or_none()

    # ------------------------------------------------------------------
    # turns
    # ------------------------------------------------------------------

    async def append_turn(
        self, key: ConversationKey, turn: Turn, session: AsyncSession | None = None
    ) -> None:
        """Append one turn to the conversation for ``key``."""
        if session is None:
            async with self.db.session() as session:
                await self._append_turn(key, turn, session)
                await session.commit()
                return
        await self._append_turn(key, turn, session)

    async def _append_turn(self, key: ConversationKey, turn: Turn, session: AsyncSession) -> None:
        conversation_id = await self._get_or_create_conversation(key, session)
        session.add(
            TurnRecord(
                conversation_id=conversation_id,
                role=turn.role.value,
                content=turn.content,
                origin_id=turn.origin_id,
                author_id=turn.author_id,
                reply_to_origin_id=turn.reply_to_origin_id,
            )
        )
        await session.flush()

    async def fetch_turns(
        self, key: ConversationKey, limit: int, session: AsyncSession | None = None
    ) -> list[Turn]:
        """Most recent ``limit`` turns for ``key``, newest first."""
        if session is None:
            async with self.db.session() as session:
                return await self._fetch_turns(key, limit, session)
        return await self._fetch_turns(key, limit, session)

    async def _fetch_turns(self, key: ConversationKey, limit: int, session: AsyncSession) -> list[Turn]:
        result = await session.execute(
            select(TurnRecord)
            .join(Conversation, TurnRecord.conversation_id == Conversation.id)
            .where(
                Conversation.surface_id == key.surface_id,
                Conversation.channel_id == key.channel_id,
                Conversation.thread_id == key.thread_id,
            )
            .order_by(TurnRecord.id.desc())
            .limit(limit)
        )
        return [self._to_turn(record) for record in result.scalars()]

    async def count_turns(self, key: ConversationKey, session: AsyncSession | None = None) -> int:
        """Total number of stored turns for ``key``."""
        if session is None:
            async with self.db.session() as session:
                return await self._count_turns(key, session)
        return await self._count_turns(key, session)

    async def _count_turns(self, key: ConversationKey, session: AsyncSession) -> int:
        result = await session.execute(
            select(func.count(TurnRecord.id))
            .join(Conversation, TurnRecord.conversation_id == Conversation.id)
            .where(
                Conversation.surface_id == key.surface_id,
                Conversation.channel_id == key.channel_id,
                Conversation.thread_id == key.thread_id,
            )
        )
        return result.scalar_one()

    async def fetch_turn_by_origin(
        self, key: ConversationKey, origin_id: str, session: AsyncSession | None = None
    ) -> Turn | None:
        """The turn carrying transport message id ``origin_id``, if stored."""
        if session is None:
            async with self.db.session() as session:
                return await self._fetch_turn_by_origin(key, origin_id, session)
        return await self._fetch_turn_by_origin(key, origin_id, session)

    async def _fetch_turn_by_origin(
        self, key: ConversationKey, origin_id: str, session: AsyncSession
    ) -> Turn | None:
        result = await session.execute(
            select(TurnRecord)
            .join(Conversation, TurnRecord.conversation_id == Conversation.id)
            .where(
                Conversation.surface_id == key.surface_id,
                Conversation.channel_id == key.channel_id,
                Conversation.thread_id == key.thread_id,
                TurnRecord.origin_id == origin_id,
            )
            .order_by(TurnRecord.id.desc())
            .limit(1)
        )
        record = result.scalar_one_or_none()
        return self._to_turn(record) if record is not None else None

    # ------------------------------------------------------------------
    # summaries
    # ------------------------------------------------------------------

    async def fetch_latest_summary(
        self, key: ConversationKey, session: AsyncSession | None = None
    ) -> Summary | None:
        """Most recently inserted summary for ``key``."""
        if session is None:
            async with self.db.session() as session:
                return await self._fetch_latest_summary(key, session)
        return await self._fetch_latest_summary(key, session)

    async def _fetch_latest_summary(self, key: ConversationKey, session: AsyncSession) -> Summary | None:
        result = await session.execute(
            select(SummaryRecord)
            .join(Conversation, SummaryRecord.conversation_id == Conversation.id)
            .where(
                Conversation.surface_id == key.surface_id,
                Conversation.channel_id == key.channel_id,
                Conversation.thread_id == key.thread_id,
            )
            .order_by(SummaryRecord.id.desc())
            .limit(1)
        )
        record = result.scalar_one_or_none()
        if record is None:
            return None
        return Summary(
            text=record.summary,
            covered_turn_count=record.covered_turn_count,
            created_at=record.created_at,
        )

    async def insert_summary(
        self, key: ConversationKey, summary: Summary, session: AsyncSession | None = None
    ) -> None:
        """Insert a new summary row; older rows are superseded, never updated."""
        if session is None:
            async with self.db.session() as session:
                await self._insert_summary(key, summary, session)
                await session.commit()
                return
        await self._insert_summary(key, summary, session)

    async def _insert_summary(self, key: ConversationKey, summary: Summary, session: AsyncSession) -> None:
        conversation_id = await self._get_or_create_conversation(key, session)
        session.add(
            SummaryRecord(
                conversation_id=conversation_id,
                summary=summary.text,
                covered_turn_count=summary.covered_turn_count,
                created_at=summary.created_at,
            )
        )
        await session.flush()

    @staticmethod
    def _to_turn(record: TurnRecord) -> Turn:
        return Turn(
            role=Role(record.role),
            content=record.content,
            origin_id=record.origin_id,
            author_id=record.author_id,
            reply_to_origin_id=record.reply_to_origin_id,
        )
