"""Test fixtures: in-memory SQLite database plus mock collaborators.

The conversation tables use portable column types, so the same models
that run on Postgres in production run here on aiosqlite.
"""

import asyncio

import pytest
import pytest_asyncio

from colloquy.api.completion import CREATIVE, DETERMINISTIC, EXTRACTION, SUMMARY, CompletionProfile
from colloquy.api.executor import ActionExecutionError
from colloquy.api.outbox import OutboxTransport
from colloquy.config import Settings
from colloquy.core.locks import KeyLockManager
from colloquy.storage.database import Database
from colloquy.storage.store import ConversationStore


def make_settings(**overrides) -> Settings:
    """Settings for tests: in-memory SQLite, no .env file."""
    values = {"database_url": "sqlite+aiosqlite://"}
    values.update(overrides)
    return Settings(_env_file=None, **values)


# ---------------------------------------------------------------------------
# Mock completion service
# ---------------------------------------------------------------------------


class MockCompletion:
    """Canned replies per CompletionProfile, with call history.

    Defaults: classification answers "no", summaries and extraction get
    fixed text, CREATIVE replies return ``preset_response``.
    """

    def __init__(self) -> None:
        self.calls: list[tuple[list, CompletionProfile]] = []
        self.preset_response = "This is a test response."
        self.replies: dict[CompletionProfile, str] = {
            DETERMINISTIC: "no",
            EXTRACTION: "test query",
            SUMMARY: "The users talked about testing.",
        }
        self.errors: dict[CompletionProfile, Exception] = {}

    async def complete(self, messages, profile: CompletionProfile = CREATIVE) -> str:
        self.calls.append((messages, profile))
        if profile in self.errors:
            raise self.errors[profile]
        if profile == CREATIVE:
            return self.preset_response
        return self.replies[profile]

    def calls_for(self, profile: CompletionProfile) -> list[list]:
        return [messages for messages, p in self.calls if p == profile]

    async def start(self) -> None:
        pass

    async def close(self) -> None:
        pass


# ---------------------------------------------------------------------------
# Mock action executor
# ---------------------------------------------------------------------------


class MockExecutor:
    """Records jobs; optionally blocks on a gate or fails."""

    def __init__(self) -> None:
        self.searches: list[str] = []
        self.generations: list[tuple[str, str, str | None]] = []
        self.error: Exception | None = None
        self.gate: asyncio.Event | None = None

    async def run_search(self, query: str) -> str:
        self.searches.append(query)
        await self._wait()
        return f"Search results for: {query}\n\n1. Example\n   URL: https://example.com\n   Sunny, 22C\n"

    async def run_generation(self, prompt: str, kind: str = "image", style: str | None = None) -> str:
        self.generations.append((prompt, kind, style))
        await self._wait()
        return "https://images.example.com/generated.png"

    async def _wait(self) -> None:
        if self.gate is not None:
            await self.gate.wait()
        if self.error is not None:
            raise self.error

    async def close(self) -> None:
        pass


class FailingPromptTransport(OutboxTransport):
    """Outbox whose approval prompts cannot be posted."""

    async def send_with_approval_controls(self, target, content, request_id):
        raise ActionExecutionError("prompt channel unavailable")


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def settings() -> Settings:
    return make_settings()


@pytest_asyncio.fixture
async def db(settings):
    """Fresh in-memory database with the schema created."""
    database = Database(settings)
    await database.connect()
    await database.create_schema()
    yield database
    await database.disconnect()


@pytest.fixture
def store(db) -> ConversationStore:
    return ConversationStore(db)


@pytest.fixture
def completion() -> MockCompletion:
    return MockCompletion()


@pytest.fixture
def executor() -> MockExecutor:
    return MockExecutor()


@pytest.fixture
def outbox() -> OutboxTransport:
    return OutboxTransport()


@pytest.fixture
def locks() -> KeyLockManager:
    return KeyLockManager()
