"""Action Approval State Machine -- human-gated side-effecting actions.

Lifecycle of one PendingAction:

    REQUESTED -> APPROVED   (approve(): executor runs, result cached)
    REQUESTED -> DENIED     (deny())
    REQUESTED -> EXPIRED    (expiry timer after approval_timeout)

The transition out of REQUESTED happens synchronously, before any
await, so approval, denial and expiry can never both win. Terminal
actions leave the live map at once; their ActionResult stays in a
separate cache until the periodic sweep purges it.

At most one REQUESTED action exists per (channel_key, normalized
query). The check-and-create runs under a KeyLockManager lock for that
dedupe key, so two near-simultaneous identical requests cannot both
create one.
"""

from __future__ import annotations

import asyncio
import logging
import secrets
import time
from collections.abc import Callable
from typing import Any

from colloquy.api.executor import ActionExecutor
from colloquy.config import Settings
from colloquy.core.locks import KeyLockManager
from colloquy.core.schemas import (
    ActionKind,
    ActionResult,
    ActionStatus,
    DeliveryTarget,
    PendingAction,
    RequestOutcome,
    RequestStatus,
)
from colloquy.core.transport import MessagingTransport
from colloquy.utils import normalize_query

logger = logging.getLogger(__name__)

# Share of max_cached_results above which the shorter retention applies
_RESULT_PRESSURE_RATIO = 0.8


class TooManyPendingActions(RuntimeError):
    """The live PendingAction map is at capacity."""


def _describe(kind: ActionKind) -> str:
    return "Search request" if kind == ActionKind.SEARCH else "Image request"


class ActionApprovalManager:
    """Owns the PendingAction map, the expiry timers and the ActionResult cache."""

    def __init__(
        self,
        transport: MessagingTransport,
        executor: ActionExecutor,
        locks: KeyLockManager,
        settings: Settings,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._transport = transport
        self._executor = executor
        self._locks = locks
        self._settings = settings
        self._clock = clock
        self._pending: dict[str, PendingAction] = {}
        self._requested: dict[str, str] = {}  # dedupe_key -> request_id, REQUESTED only
        self._results: dict[str, ActionResult] = {}
        self._timers: dict[str, asyncio.Task] = {}
        self._sweep_task: asyncio.Task | None = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Start the periodic result-cache sweep."""
        self._sweep_task = asyncio.create_task(self._sweep_loop(), name="action-result-sweep")
        logger.info(
            "Action approval started (timeout=%ds, retention=%ds)",
            self._settings.approval_timeout,
            self._settings.result_retention,
        )

    async def stop(self) -> None:
        """Cancel the sweep and every outstanding expiry timer."""
        tasks = list(self._timers.values())
        if self._sweep_task:
            tasks.append(self._sweep_task)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._timers.clear()
        self._sweep_task = None

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    def get_pending(self, request_id: str) -> PendingAction | None:
        return self._pending.get(request_id)

    def get_result(self, request_id: str) -> ActionResult | None:
        return self._results.get(request_id)

    # ------------------------------------------------------------------
    # request()
    # ------------------------------------------------------------------

    async def request(
        self,
        channel_key: str,
        kind: ActionKind,
        query: str,
        reason: str,
        *,
        target: DeliveryTarget,
        style: str | None = None,
        origin: Any = None,
    ) -> RequestOutcome:
        """Ask for approval to run an action, or run it at once if none is needed.

        Returns a DUPLICATE outcome when an identical request on the same
        channel is still awaiting a decision (or being created right now),
        EXECUTED when the channel needs no approval, and PENDING otherwise.

        Raises:
            TooManyPendingActions: the live map is full.
        """
        dedupe_key = f"{channel_key}|{normalize_query(query)}"
        if self._locks.is_locked(dedupe_key) or dedupe_key in self._requested:
            logger.info("Duplicate %s request on %s: %r", kind, channel_key, query)
            return RequestOutcome(RequestStatus.DUPLICATE, request_id=self._requested.get(dedupe_key))

        return await self._locks.with_lock(
            dedupe_key,
            lambda: self._create(channel_key, dedupe_key, kind, query, reason, target, style, origin),
        )

    async def _create(
        self,
        channel_key: str,
        dedupe_key: str,
        kind: ActionKind,
        query: str,
        reason: str,
        target: DeliveryTarget,
        style: str | None,
        origin: Any,
    ) -> RequestOutcome:
        request_id = self._new_request_id(channel_key)

        if not self._settings.requires_approval(channel_key):
            logger.info("Approval not required on %s, running %s %s", channel_key, kind, request_id)
            result = await self._execute(request_id, kind, query, style)
            return RequestOutcome(RequestStatus.EXECUTED, request_id=request_id, result=result)

        if len(self._pending) >= self._settings.max_pending_actions:
            raise TooManyPendingActions(f"{len(self._pending)} actions already awaiting approval")

        pending = PendingAction(
            request_id=request_id,
            kind=kind,
            query=query,
            reason=reason,
            channel_key=channel_key,
            dedupe_key=dedupe_key,
            created_at=self._clock(),
            target=target,
            style=style,
            origin=origin,
        )
        self._pending[request_id] = pending
        self._requested[dedupe_key] = request_id

        try:
            pending.prompt_ref = await self._transport.send_with_approval_controls(
                target, self._prompt_text(pending), request_id
            )
        except Exception:
            self._evict(pending)
            raise

        self._timers[request_id] = asyncio.create_task(
            self._expire_after(request_id, self._settings.approval_timeout),
            name=f"expire-{request_id}",
        )
        logger.info("Created %s %s on %s: %r", kind, request_id, channel_key, query)
        return RequestOutcome(RequestStatus.PENDING, request_id=request_id)

    def _new_request_id(self, channel_key: str) -> str:
        return f"{channel_key}-{int(self._clock() * 1000)}-{secrets.token_hex(3)}"

    def _prompt_text(self, pending: PendingAction) -> str:
        minutes = max(1, round(self._settings.approval_timeout / 60))
        if pending.kind == ActionKind.SEARCH:
            headline = f'🔍 I\'d like to search the web for:\n"{pending.query}"'
        else:
            headline = f'🎨 I\'d like to generate an image of:\n"{pending.query}"'
            if pending.style:
                headline += f"\nStyle: {pending.style}"
        return (
            f"{headline}\n\nReason: {pending.reason}\n\n"
            f"Approve or deny below. This request expires in {minutes} minute{'s' if minutes != 1 else ''}."
        )

    # ------------------------------------------------------------------
    # approve() / deny()
    # ------------------------------------------------------------------

    async def approve(self, request_id: str, approver: str) -> ActionResult | None:
        """Run an approved action; None if it expired or was already handled.

        Executor errors are re-raised after the approval prompt is
        edited to show the failure.
        """
        pending = self._pending.get(request_id)
        if pending is None or pending.status is not ActionStatus.REQUESTED:
            logger.info("Approval of %s by %s ignored: expired or already handled", request_id, approver)
            return None

        pending.status = ActionStatus.APPROVED
        self._cancel_timer(request_id)
        self._requested.pop(pending.dedupe_key, None)
        label = _describe(pending.kind)

        try:
            await self._edit_prompt(pending, f'✅ {label} for "{pending.query}" approved by {approver}.')
            result = await self._execute(request_id, pending.kind, pending.query, pending.style)
        except Exception:
            await self._edit_prompt(
                pending, f'⚠️ {label} for "{pending.query}" was approved by {approver} but failed.'
            )
            raise
        finally:
            self._pending.pop(request_id, None)

        logger.info("%s approved by %s", request_id, approver)
        return result

    async def deny(self, request_id: str, denier: str) -> bool:
        """Deny a pending action; False if it expired or was already handled."""
        pending = self._pending.get(request_id)
        if pending is None or pending.status is not ActionStatus.REQUESTED:
            logger.info("Denial of %s by %s ignored: expired or already handled", request_id, denier)
            return False

        pending.status = ActionStatus.DENIED
        self._cancel_timer(request_id)
        self._evict(pending)
        logger.info("%s denied by %s", request_id, denier)
        await self._edit_prompt(
            pending, f'❌ {_describe(pending.kind)} for "{pending.query}" denied by {denier}.'
        )
        return True

    # ------------------------------------------------------------------
    # Expiry
    # ------------------------------------------------------------------

    async def _expire_after(self, request_id: str, delay: float) -> None:
        await asyncio.sleep(delay)
        self._timers.pop(request_id, None)
        await self._expire(request_id)

    async def _expire(self, request_id: str) -> None:
        pending = self._pending.get(request_id)
        if pending is None or pending.status is not ActionStatus.REQUESTED:
            return

        pending.status = ActionStatus.EXPIRED
        self._evict(pending)
        logger.info("%s expired without a decision", request_id)
        await self._edit_prompt(
            pending, f'⌛ {_describe(pending.kind)} for "{pending.query}" expired without approval.'
        )

    def _cancel_timer(self, request_id: str) -> None:
        timer = self._timers.pop(request_id, None)
        if timer is not None:
            timer.cancel()

    def _evict(self, pending: PendingAction) -> None:
        self._pending.pop(pending.request_id, None)
        if self._requested.get(pending.dedupe_key) == pending.request_id:
            del self._requested[pending.dedupe_key]

    async def _edit_prompt(self, pending: PendingAction, content: str) -> None:
        """Best-effort edit of the approval prompt; a failed edit never changes state."""
        if pending.prompt_ref is None:
            return
        try:
            await self._transport.edit(pending.prompt_ref, content)
        except Exception as e:
            logger.warning("Could not edit approval prompt for %s: %s", pending.request_id, e)

    # ------------------------------------------------------------------
    # Execution and result cache
    # ------------------------------------------------------------------

    async def _execute(
        self, request_id: str, kind: ActionKind, query: str, style: str | None
    ) -> ActionResult:
        if kind == ActionKind.SEARCH:
            text = await self._executor.run_search(query)
            result = ActionResult(
                request_id=request_id, kind=kind, query=query, output_text=text, produced_at=self._clock()
            )
        else:
            artifact = await self._executor.run_generation(query, "image", style)
            result = ActionResult(
                request_id=request_id,
                kind=kind,
                query=query,
                output_artifact_ref=artifact,
                produced_at=self._clock(),
            )
        self._store_result(result)
        return result

    def _store_result(self, result: ActionResult) -> None:
        while len(self._results) >= self._settings.max_cached_results:
            oldest = next(iter(self._results))
            del self._results[oldest]
        self._results[result.request_id] = result

    def purge_results(self, now: float | None = None) -> int:
        """Drop cached results older than the retention window; return how many."""
        now = self._clock() if now is None else now
        retention = self._settings.result_retention
        if len(self._results) > self._settings.max_cached_results * _RESULT_PRESSURE_RATIO:
            retention = self._settings.result_pressure_retention

        stale = [rid for rid, result in self._results.items() if now - result.produced_at > retention]
        for rid in stale:
            del self._results[rid]
        if stale:
            logger.info("Purged %d cached action results (%d remain)", len(stale), len(self._results))
        return len(stale)

    async def _sweep_loop(self) -> None:
        """Periodic purge of the result cache."""
        while True:
            try:
                await asyncio.sleep(self._settings.result_sweep_interval)
                self.purge_results()
            except asyncio.CancelledError:
                break
            except Exception:
                logger.exception("Action result sweep failed")
