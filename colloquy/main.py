"""Colloquy entry point.

Initializes all components and starts the server:
  Settings -> Database -> clients -> core (locks, context, intents,
  approvals, orchestrator) -> surfaces (REST, Telegram) -> Uvicorn

Uses Starlette lifespan to manage component lifecycle on the same
event loop as uvicorn.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

import uvicorn
from starlette.applications import Starlette

from colloquy.api.completion import CompletionClient
from colloquy.api.executor import ActionExecutor
from colloquy.api.outbox import OutboxTransport
from colloquy.config import Settings
from colloquy.core.approval import ActionApprovalManager
from colloquy.core.context import ContextWindowManager
from colloquy.core.intent import IntentDetector
from colloquy.core.locks import KeyLockManager
from colloquy.core.orchestrator import Orchestrator
from colloquy.storage.database import Database
from colloquy.storage.store import ConversationStore
from colloquy.telegram_bot import TelegramDispatcher, TelegramTransport

logger = logging.getLogger(__name__)


async def create_components(settings: Settings) -> dict:
    """Initialize all components in dependency order.

    Returns dict with all components for lifespan storage.

    1. Database - connection pool + schema
    2. CompletionClient / ActionExecutor - external collaborators
    3. Transport - Telegram when a bot token is set, in-memory outbox otherwise
    4. KeyLockManager, ContextWindowManager, IntentDetector, ActionApprovalManager
    5. Orchestrator
    6. TelegramDispatcher - polling, only with Telegram
    """
    database = Database(settings)
    await database.connect()
    await database.create_schema()
    store = ConversationStore(database)

    completion = CompletionClient(settings)
    await completion.start()
    executor = ActionExecutor(settings)

    outbox = None
    telegram = None
    if settings.telegram_bot_token:
        telegram = TelegramTransport(settings.telegram_bot_token)
        transport = telegram
    else:
        outbox = OutboxTransport()
        transport = outbox

    locks = KeyLockManager()
    context = ContextWindowManager(store, completion, locks, settings)
    intents = IntentDetector(completion)
    approvals = ActionApprovalManager(transport, executor, locks, settings)
    await approvals.start()

    orchestrator = Orchestrator(settings, transport, intents, approvals, context, completion, locks)

    dispatcher = None
    if telegram is not None:
        dispatcher = TelegramDispatcher(
            telegram,
            orchestrator,
            allowed_users=set(settings.telegram_allowed_users) or None,
        )
        await dispatcher.start()

    return {
        "database": database,
        "store": store,
        "completion": completion,
        "executor": executor,
        "transport": transport,
        "outbox": outbox,
        "telegram": telegram,
        "locks": locks,
        "context": context,
        "intents": intents,
        "approvals": approvals,
        "orchestrator": orchestrator,
        "dispatcher": dispatcher,
    }


async def shutdown_components(components: dict) -> None:
    """Graceful shutdown in reverse order."""
    logger.info("Shutting down Colloquy...")

    dispatcher = components.get("dispatcher")
    if dispatcher:
        await dispatcher.stop()

    approvals = components.get("approvals")
    if approvals:
        await approvals.stop()

    telegram = components.get("telegram")
    if telegram:
        await telegram.close()

    executor = components.get("executor")
    if executor:
        await executor.close()

    completion = components.get("completion")
    if completion:
        await completion.close()

    database = components.get("database")
    if database:
        await database.disconnect()

    logger.info("Colloquy shutdown complete.")


def build_app(settings: Settings) -> Starlette:
    """Build the Starlette app; components are created in the lifespan."""
    components: dict = {}

    @asynccontextmanager
    async def lifespan(app: Starlette) -> AsyncIterator[None]:
        components.update(await create_components(settings))
        # Store on app.state for access in tests
        app.state.components = components
        logger.info(
            "Colloquy started (transport=%s, delivery=%s)",
            "telegram" if components.get("telegram") else "outbox",
            settings.delivery_mode,
        )
        yield
        await shutdown_components(components)

    from colloquy.api.rest import create_app

    return create_app(
        orchestrator=_lazy_component(components, "orchestrator"),
        approvals=_lazy_component(components, "approvals"),
        database=_lazy_component(components, "database"),
        settings=settings,
        outbox=_lazy_component(components, "outbox", optional=True),
        lifespan=lifespan,
    )


class _LazyProxy:
    """Proxy that defers attribute access to a dict-backed component.

    Allows create_app() to receive component references before lifespan
    has initialized them.
    """

    def __init__(self, components: dict, key: str) -> None:
        object.__setattr__(self, "_components", components)
        object.__setattr__(self, "_key", key)

    def _resolve(self):
        components = object.__getattribute__(self, "_components")
        key = object.__getattribute__(self, "_key")
        obj = components.get(key)
        if obj is None:
            raise RuntimeError(f"Component '{key}' not yet initialized; lifespan hasn't started")
        return obj

    def __getattr__(self, name):
        return getattr(self._resolve(), name)


def _lazy_component(components: dict, key: str, optional: bool = False):
    """Create a lazy proxy for a component that will be initialized in lifespan."""
    if optional:
        return _OptionalProxy(components, key)
    return _LazyProxy(components, key)


class _OptionalProxy(_LazyProxy):
    """Lazy proxy for a component that may legitimately be absent (falsy until present)."""

    def __bool__(self) -> bool:
        return object.__getattribute__(self, "_components").get(object.__getattribute__(self, "_key")) is not None


def main() -> None:
    """Entry point: parse settings, build app, run server."""
    settings = Settings()

    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
    )

    logger.info("Starting Colloquy")
    logger.info("Model: %s", settings.model)
    logger.info("Database: %s", settings.db_url.split("@")[-1])

    if not settings.anthropic_api_key and not settings.anthropic_auth_token:
        logger.warning(
            "Neither ANTHROPIC_API_KEY nor ANTHROPIC_AUTH_TOKEN is set; "
            "completions will fail and intent detection will use the regex fallback"
        )
    if not settings.brave_search_api_key:
        logger.warning("BRAVE_SEARCH_API_KEY not set, approved searches will fail")
    if not settings.telegram_bot_token:
        logger.info("TELEGRAM_BOT_TOKEN not set, replies go to the in-memory outbox")

    app = build_app(settings)

    uvicorn.run(
        app,
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level,
    )


if __name__ == "__main__":
    main()
