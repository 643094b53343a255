"""
Entry point used by the platform call-screening hook.

`CallScreeningService.screen` bounds the whole pipeline by a single deadline.
Anything that goes wrong in there (timeout, store error, bug) yields Allow:
a spam call getting through is preferable to dropping a legitimate one.

Recording the call, capturing the behavioral event and posting a
notification are scheduled as background tasks once the decision is known.
Their failures are logged and never reach the caller.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Callable, Protocol

from callshield.core.identity import NumberHasher, mask_number
from callshield.screening.behavioral import RingTimeRegistry
from callshield.screening.decision import (
    ALLOW_RESPONSE,
    Allow,
    CallDecision,
    CallResponse,
    DecisionSource,
    Flag,
    Reject,
    Silence,
    build_response,
    outcome_for,
    score_and_category,
)
from callshield.screening.orchestrator import ScreeningOrchestrator, ScreeningSettings
from callshield.storage.device import (
    CallerEventRepository,
    CallHistoryRecord,
    CallHistoryRepository,
    NumberListRepository,
)

logger = logging.getLogger(__name__)

DEFAULT_DEADLINE_SECONDS = 1.4
FAIL_OPEN = Allow(DecisionSource.DEFAULT)


class Notifier(Protocol):
    def notify_blocked(self, label: str, reason: str) -> None:  # pragma: no cover - helper protocol
        raise NotImplementedError

    def notify_missed_call_warning(
        self, label: str, category: str | None
    ) -> None:  # pragma: no cover - helper protocol
        raise NotImplementedError

    def notify_flagged(
        self, label: str, score: float, category: str | None
    ) -> None:  # pragma: no cover - helper protocol
        raise NotImplementedError


class LoggingNotifier:
    """Notifier that writes to the log instead of a notification shade."""

    def notify_blocked(self, label: str, reason: str) -> None:
        logger.info("blocked call from %s (%s)", label, reason)

    def notify_missed_call_warning(self, label: str, category: str | None) -> None:
        logger.info("silenced call from %s (%s)", label, category or "spam")

    def notify_flagged(self, label: str, score: float, category: str | None) -> None:
        logger.info("possible spam from %s: score=%.2f category=%s", label, score, category)


class CallRecorder:
    """Post-decision side effects: history row, behavioral event, notification.

    A `Reject` carrying a `blocklist_note` also adds the caller to the
    blocklist, after the history row is written.
    """

    def __init__(
        self,
        *,
        hasher: NumberHasher,
        history: CallHistoryRepository,
        events: CallerEventRepository,
        notifier: Notifier | None = None,
        blocklist: NumberListRepository | None = None,
        settings_provider: Callable[[], ScreeningSettings] = ScreeningSettings,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._hasher = hasher
        self._history = history
        self._events = events
        self._notifier: Notifier = notifier or LoggingNotifier()
        self._blocklist = blocklist
        self._settings_provider = settings_provider
        self._clock = clock

    def record(self, raw_number: str | None, decision: CallDecision) -> None:
        now = self._clock()
        number_hash = self._hasher.hash(raw_number)
        label = mask_number(raw_number)
        score, category = score_and_category(decision)

        if number_hash is not None:
            self._events.record(number_hash, "incoming_call", occurred_at=now)

        self._history.record(
            CallHistoryRecord(
                number_hash=number_hash or "",
                display_label=label,
                outcome=outcome_for(decision),
                confidence_score=score,
                category=category,
                decision_source=decision.source.value,
                screened_at=now,
            )
        )
        if (
            isinstance(decision, Reject)
            and decision.blocklist_note
            and number_hash is not None
            and self._blocklist is not None
        ):
            self._blocklist.add(number_hash, decision.blocklist_note)
            logger.info("added %s to blocklist: %s", label, decision.blocklist_note)
        self._notify(label, decision)

    def _notify(self, label: str, decision: CallDecision) -> None:
        settings = self._settings_provider()
        if isinstance(decision, Reject):
            if settings.notify_on_block:
                self._notifier.notify_blocked(label, decision.source.display_label)
        elif isinstance(decision, Silence):
            if settings.notify_on_block:
                self._notifier.notify_missed_call_warning(label, decision.category)
        elif isinstance(decision, Flag):
            if settings.notify_on_flag:
                self._notifier.notify_flagged(label, decision.confidence_score, decision.category)


class CallScreeningService:
    def __init__(
        self,
        orchestrator: ScreeningOrchestrator,
        *,
        recorder: CallRecorder | None = None,
        ring_registry: RingTimeRegistry | None = None,
        hasher: NumberHasher | None = None,
        deadline_seconds: float = DEFAULT_DEADLINE_SECONDS,
    ) -> None:
        self._orchestrator = orchestrator
        self._recorder = recorder
        self._ring_registry = ring_registry
        self._hasher = hasher
        self._deadline = deadline_seconds
        self._background: set[asyncio.Task[None]] = set()

    async def decide(self, raw_number: str | None) -> CallDecision:
        """Run the pipeline under the deadline; never raises."""

        decision = await self._run_pipeline(raw_number)
        return FAIL_OPEN if decision is None else decision

    async def _run_pipeline(self, raw_number: str | None) -> CallDecision | None:
        started = time.monotonic()
        try:
            decision = await asyncio.wait_for(
                self._orchestrator.decide(raw_number), timeout=self._deadline
            )
        except asyncio.TimeoutError:
            logger.warning(
                "screening deadline of %.2fs exceeded; allowing call", self._deadline
            )
            return None
        except Exception:
            logger.exception("screening failed; allowing call")
            return None

        logger.debug(
            "screened in %.0fms: %s/%s",
            (time.monotonic() - started) * 1000,
            outcome_for(decision),
            decision.source.value,
        )
        return decision

    async def screen(self, raw_number: str | None) -> tuple[CallDecision, CallResponse]:
        """Decide, answer the platform and schedule the side effects."""

        self._mark_ring_start(raw_number)
        decision = await self._run_pipeline(raw_number)
        if decision is None:
            return FAIL_OPEN, ALLOW_RESPONSE
        self._schedule_recording(raw_number, decision)
        return decision, build_response(decision)

    async def call_ended(self) -> tuple[str, bool] | None:
        """Close the active ring; a short one is logged as a `short_ring` event."""

        if self._ring_registry is None:
            return None
        try:
            return await asyncio.to_thread(self._ring_registry.on_call_ended)
        except Exception:
            logger.exception("failed to record call end")
            return None

    async def drain(self) -> None:
        """Wait for pending background recording (shutdown and tests)."""

        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    def _mark_ring_start(self, raw_number: str | None) -> None:
        if self._ring_registry is None or self._hasher is None:
            return
        number_hash = self._hasher.hash(raw_number)
        if number_hash is not None:
            self._ring_registry.on_ring_start(number_hash)

    def _schedule_recording(self, raw_number: str | None, decision: CallDecision) -> None:
        if self._recorder is None:
            return
        task = asyncio.create_task(self._record(self._recorder, raw_number, decision))
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _record(
        self, recorder: CallRecorder, raw_number: str | None, decision: CallDecision
    ) -> None:
        try:
            await asyncio.to_thread(recorder.record, raw_number, decision)
        except Exception:
            logger.exception("failed to record screened call")
