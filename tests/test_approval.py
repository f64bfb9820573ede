"""Tests for ActionApprovalManager: dedupe, decisions, expiry and the result cache."""

import asyncio

import pytest
import pytest_asyncio

from colloquy.api.executor import ActionExecutionError
from colloquy.core.approval import ActionApprovalManager, TooManyPendingActions
from colloquy.core.locks import KeyLockManager
from colloquy.core.schemas import ActionKind, ActionStatus, ChannelTarget, RequestStatus
from conftest import FailingPromptTransport, make_settings

CHANNEL = "chan-1"
TARGET = ChannelTarget(CHANNEL)


class Clock:
    def __init__(self, now: float = 1_000_000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


@pytest_asyncio.fixture
async def make_manager(outbox, executor):
    """Factory for managers bound to the shared outbox and executor; stopped on teardown."""
    managers = []

    def _make(transport=None, clock=None, **overrides):
        settings = make_settings(**overrides)
        kwargs = {"clock": clock} if clock is not None else {}
        manager = ActionApprovalManager(transport or outbox, executor, KeyLockManager(), settings, **kwargs)
        managers.append(manager)
        return manager

    yield _make
    for manager in managers:
        await manager.stop()


async def _search(manager, query="weather in Tokyo", channel=CHANNEL):
    return await manager.request(
        channel, ActionKind.SEARCH, query, "User asked about the weather", target=ChannelTarget(channel)
    )


# ---------------------------------------------------------------------------
# request()
# ---------------------------------------------------------------------------


class TestRequest:
    @pytest.mark.asyncio
    async def test_request_posts_prompt_with_controls(self, make_manager, outbox, executor):
        manager = make_manager()
        outcome = await _search(manager)

        assert outcome.status == RequestStatus.PENDING
        assert outcome.request_id.startswith(f"{CHANNEL}-")
        [prompt] = outbox.messages(CHANNEL)
        assert prompt.approval_request_id == outcome.request_id
        assert "weather in Tokyo" in prompt.content
        assert "Reason: User asked about the weather" in prompt.content
        assert manager.get_pending(outcome.request_id).status == ActionStatus.REQUESTED
        assert executor.searches == []

    @pytest.mark.asyncio
    async def test_duplicate_returns_existing_id(self, make_manager, outbox):
        manager = make_manager()
        first = await _search(manager, "Weather in Tokyo?")
        second = await _search(manager, "  weather   in tokyo ")

        assert second.status == RequestStatus.DUPLICATE
        assert second.request_id == first.request_id
        assert manager.pending_count == 1
        assert len(outbox.messages(CHANNEL)) == 1

    @pytest.mark.asyncio
    async def test_concurrent_identical_requests_create_one(self, make_manager, outbox):
        manager = make_manager()
        outcomes = await asyncio.gather(*(_search(manager) for _ in range(5)))

        statuses = [o.status for o in outcomes]
        assert statuses.count(RequestStatus.PENDING) == 1
        assert statuses.count(RequestStatus.DUPLICATE) == 4
        assert manager.pending_count == 1
        assert len(outbox.messages(CHANNEL)) == 1

    @pytest.mark.asyncio
    async def test_same_query_on_other_channel_is_separate(self, make_manager):
        manager = make_manager()
        first = await _search(manager, channel="chan-1")
        second = await _search(manager, channel="chan-2")
        assert first.status == second.status == RequestStatus.PENDING
        assert first.request_id != second.request_id

    @pytest.mark.asyncio
    async def test_exempt_channel_executes_immediately(self, make_manager, outbox, executor):
        manager = make_manager(approval_exempt_channels=[CHANNEL])
        outcome = await _search(manager)

        assert outcome.status == RequestStatus.EXECUTED
        assert outcome.result.output_text.startswith("Search results for: weather in Tokyo")
        assert executor.searches == ["weather in Tokyo"]
        assert outbox.messages(CHANNEL) == []
        assert manager.get_result(outcome.request_id) == outcome.result

    @pytest.mark.asyncio
    async def test_approval_disabled_executes_generation(self, make_manager, executor):
        manager = make_manager(require_action_approval=False)
        outcome = await manager.request(
            CHANNEL, ActionKind.GENERATE, "a red fox", "drawing", target=TARGET, style="painting"
        )
        assert outcome.status == RequestStatus.EXECUTED
        assert outcome.result.output_artifact_ref == "https://images.example.com/generated.png"
        assert executor.generations == [("a red fox", "image", "painting")]

    @pytest.mark.asyncio
    async def test_capacity_limit(self, make_manager):
        manager = make_manager(max_pending_actions=1)
        await _search(manager, "first query")
        with pytest.raises(TooManyPendingActions):
            await _search(manager, "second query")

    @pytest.mark.asyncio
    async def test_prompt_failure_evicts_action(self, make_manager):
        manager = make_manager(transport=FailingPromptTransport())
        with pytest.raises(ActionExecutionError):
            await _search(manager)
        assert manager.pending_count == 0

        # Nothing left behind to block a retry as a duplicate
        with pytest.raises(ActionExecutionError):
            await _search(manager)


# ---------------------------------------------------------------------------
# approve() / deny()
# ---------------------------------------------------------------------------


class TestDecisions:
    @pytest.mark.asyncio
    async def test_approve_executes_and_edits_prompt(self, make_manager, outbox, executor):
        manager = make_manager()
        outcome = await _search(manager)

        result = await manager.approve(outcome.request_id, "alice")

        assert result is not None
        assert result.request_id == outcome.request_id
        assert executor.searches == ["weather in Tokyo"]
        [prompt] = outbox.messages(CHANNEL)
        assert prompt.edited
        assert "approved by alice" in prompt.content
        assert prompt.approval_request_id is None
        assert manager.get_pending(outcome.request_id) is None
        assert manager.get_result(outcome.request_id) == result

    @pytest.mark.asyncio
    async def test_second_decision_is_ignored(self, make_manager, executor):
        manager = make_manager()
        outcome = await _search(manager)
        await manager.approve(outcome.request_id, "alice")

        assert await manager.approve(outcome.request_id, "bob") is None
        assert await manager.deny(outcome.request_id, "bob") is False
        assert len(executor.searches) == 1

    @pytest.mark.asyncio
    async def test_concurrent_approvals_execute_once(self, make_manager, executor):
        manager = make_manager()
        outcome = await _search(manager)
        executor.gate = asyncio.Event()

        first = asyncio.create_task(manager.approve(outcome.request_id, "alice"))
        second = asyncio.create_task(manager.approve(outcome.request_id, "bob"))
        await asyncio.sleep(0.01)
        executor.gate.set()

        results = await asyncio.gather(first, second)
        assert sum(r is not None for r in results) == 1
        assert len(executor.searches) == 1

    @pytest.mark.asyncio
    async def test_deny(self, make_manager, outbox, executor):
        manager = make_manager()
        outcome = await _search(manager)

        assert await manager.deny(outcome.request_id, "carol") is True
        [prompt] = outbox.messages(CHANNEL)
        assert "denied by carol" in prompt.content
        assert await manager.approve(outcome.request_id, "alice") is None
        assert executor.searches == []

    @pytest.mark.asyncio
    async def test_new_request_allowed_after_decision(self, make_manager):
        manager = make_manager()
        first = await _search(manager)
        await manager.deny(first.request_id, "carol")

        second = await _search(manager)
        assert second.status == RequestStatus.PENDING
        assert second.request_id != first.request_id

    @pytest.mark.asyncio
    async def test_execution_failure_reraised_after_edit(self, make_manager, outbox, executor):
        manager = make_manager()
        outcome = await _search(manager)
        executor.error = ActionExecutionError("search service down")

        with pytest.raises(ActionExecutionError):
            await manager.approve(outcome.request_id, "alice")

        [prompt] = outbox.messages(CHANNEL)
        assert "failed" in prompt.content
        assert manager.get_pending(outcome.request_id) is None
        assert manager.get_result(outcome.request_id) is None

    @pytest.mark.asyncio
    async def test_unknown_request_id(self, make_manager):
        manager = make_manager()
        assert await manager.approve("nope", "alice") is None
        assert await manager.deny("nope", "alice") is False


# ---------------------------------------------------------------------------
# Expiry
# ---------------------------------------------------------------------------


class TestExpiry:
    @pytest.mark.asyncio
    async def test_expires_after_timeout(self, make_manager, outbox, executor):
        manager = make_manager(approval_timeout=0.05)
        outcome = await _search(manager)

        await asyncio.sleep(0.15)

        assert manager.get_pending(outcome.request_id) is None
        [prompt] = outbox.messages(CHANNEL)
        assert "expired" in prompt.content
        assert await manager.approve(outcome.request_id, "alice") is None
        assert await manager.deny(outcome.request_id, "bob") is False
        assert executor.searches == []
        [prompt] = outbox.messages(CHANNEL)
        assert "expired" in prompt.content
        assert "denied" not in prompt.content

    @pytest.mark.asyncio
    async def test_expired_request_can_be_asked_again(self, make_manager):
        manager = make_manager(approval_timeout=0.05)
        first = await _search(manager)
        await asyncio.sleep(0.15)

        second = await _search(manager)
        assert second.status == RequestStatus.PENDING
        assert second.request_id != first.request_id

    @pytest.mark.asyncio
    async def test_decision_cancels_expiry(self, make_manager, outbox):
        manager = make_manager(approval_timeout=0.05)
        outcome = await _search(manager)
        await manager.approve(outcome.request_id, "alice")
        await asyncio.sleep(0.15)

        [prompt] = outbox.messages(CHANNEL)
        assert "approved by alice" in prompt.content

    @pytest.mark.asyncio
    async def test_stop_cancels_timers(self, make_manager, outbox):
        manager = make_manager(approval_timeout=0.05)
        await manager.start()
        await _search(manager)
        await manager.stop()
        await asyncio.sleep(0.15)

        [prompt] = outbox.messages(CHANNEL)
        assert not prompt.edited


# ---------------------------------------------------------------------------
# Result cache
# ---------------------------------------------------------------------------


class TestResultCache:
    @pytest.mark.asyncio
    async def test_purge_drops_results_past_retention(self, make_manager):
        clock = Clock()
        manager = make_manager(clock=clock, require_action_approval=False, result_retention=3600)
        old = await _search(manager, "old query")
        clock.now += 3000
        fresh = await _search(manager, "fresh query")

        clock.now += 1000
        assert manager.purge_results() == 1
        assert manager.get_result(old.request_id) is None
        assert manager.get_result(fresh.request_id) is not None

    @pytest.mark.asyncio
    async def test_purge_uses_shorter_retention_under_pressure(self, make_manager):
        clock = Clock()
        manager = make_manager(
            clock=clock,
            require_action_approval=False,
            max_cached_results=5,
            result_retention=3600,
            result_pressure_retention=600,
        )
        for i in range(5):
            await _search(manager, f"query {i}")

        clock.now += 900
        assert manager.purge_results() == 5

    @pytest.mark.asyncio
    async def test_cache_evicts_oldest_at_capacity(self, make_manager):
        manager = make_manager(require_action_approval=False, max_cached_results=2)
        first = await _search(manager, "one")
        second = await _search(manager, "two")
        third = await _search(manager, "three")

        assert manager.get_result(first.request_id) is None
        assert manager.get_result(second.request_id) is not None
        assert manager.get_result(third.request_id) is not None
