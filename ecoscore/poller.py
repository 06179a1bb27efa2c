"""Polling for the external pipeline's analysis of a submission.

The pipeline runs out of band and takes anywhere from seconds to many
minutes, so a submission is followed by a poll loop:

- the first tick runs immediately, later ticks every ``interval`` seconds;
- a detailed analysis ends the loop (``found-detailed``);
- a legacy analysis is reported (``found-legacy``) but polling continues,
  because a detailed analysis may still arrive and supersedes it;
- when ``timeout`` seconds of wall clock pass without a detailed analysis the
  loop emits a single ``timeout`` and ends, even if a store query is still
  running at that moment. Recovery is a manual
  :func:`check_analysis`, never an automatic restart.

One poller has at most one query in flight and one pending timer.
:meth:`AnalysisPoller.cancel` stops both at once, and nothing is emitted after
it returns, including the result of a query that was already running.
"""
from __future__ import annotations

import asyncio
import enum
import logging
import time
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import aclosing
from dataclasses import dataclass
from typing import Any, Protocol

from ecoscore.config import DEFAULT_POLL_INTERVAL, DEFAULT_POLL_TIMEOUT
from ecoscore.normalizer import normalize_detailed, normalize_legacy
from ecoscore.schemas import (
    AnalysisLookupOut,
    NormalizedDetailedAnalysis,
    NormalizedLegacyAnalysis,
    PollEventOut,
)
from ecoscore.services import validate_institution_name

log = logging.getLogger(__name__)

TIMEOUT_MESSAGE = "Analysis is still processing. Check again later."

_CANCELLED = object()
_EXPIRED = object()
_UNSEEN = object()


class PollState(str, enum.Enum):
    PENDING = "pending"
    FOUND_DETAILED = "found-detailed"
    FOUND_LEGACY = "found-legacy"
    TIMEOUT = "timeout"


class AnalysisSource(Protocol):
    async def get_detailed_analysis(self, submission_id: str) -> Any: ...
    async def get_analysis(self, submission_id: str) -> Any: ...


@dataclass(frozen=True)
class PollEvent:
    state: PollState
    tick: int
    elapsed: float
    detailed: NormalizedDetailedAnalysis | None = None
    legacy: NormalizedLegacyAnalysis | None = None

    @property
    def payload(self) -> NormalizedDetailedAnalysis | NormalizedLegacyAnalysis | None:
        return self.detailed or self.legacy

    @property
    def terminal(self) -> bool:
        return self.state in (PollState.FOUND_DETAILED, PollState.TIMEOUT)

    def to_out(self) -> PollEventOut:
        return PollEventOut(
            state=self.state.value,
            tick=self.tick,
            elapsed=round(self.elapsed, 3),
            message=TIMEOUT_MESSAGE if self.state is PollState.TIMEOUT else None,
            detailed=self.detailed,
            legacy=self.legacy,
        )


def _drain(task: asyncio.Future) -> None:
    # Late results of abandoned queries are dropped; retrieve the exception so
    # asyncio does not report it as unhandled.
    if not task.cancelled():
        task.exception()


class AnalysisPoller:
    """Poll the store for the analysis of one submission.

    Usage::

        poller = AnalysisPoller(store, submission_id, interval=5, timeout=600)
        async for event in poller.events():
            ...

    ``events()`` can be iterated again once a previous run has finished
    (timeout, detailed hit or cancellation); each run gets a fresh deadline.
    """

    def __init__(
        self,
        store: AnalysisSource,
        submission_id: str,
        *,
        interval: float = DEFAULT_POLL_INTERVAL,
        timeout: float = DEFAULT_POLL_TIMEOUT,
        clock: Callable[[], float] = time.monotonic,
    ):
        if interval <= 0 or timeout <= 0:
            raise ValueError("interval and timeout must be positive")
        self.store = store
        self.submission_id = submission_id
        self.interval = interval
        self.timeout = timeout
        self._clock = clock
        self._cancel_event = asyncio.Event()
        self._running = False
        self._has_run = False
        self._in_flight = False

    @property
    def running(self) -> bool:
        return self._running

    @property
    def cancelled(self) -> bool:
        return self._cancel_event.is_set()

    @property
    def in_flight(self) -> bool:
        return self._in_flight

    def cancel(self) -> None:
        """Stop polling. No event is emitted after this returns."""
        if not self._cancel_event.is_set():
            log.info("Polling cancelled for submission %s", self.submission_id)
        self._cancel_event.set()

    async def events(self) -> AsyncIterator[PollEvent]:
        if self._running:
            raise RuntimeError(f"Poller for submission {self.submission_id} is already running")
        if self._has_run:
            self._cancel_event = asyncio.Event()
        self._running = True
        self._has_run = True
        try:
            async with aclosing(self._run()) as run:
                async for event in run:
                    yield event
        finally:
            self._running = False

    async def _run(self) -> AsyncIterator[PollEvent]:
        start = self._clock()
        deadline = start + self.timeout
        tick = 0
        last_legacy_id: Any = _UNSEEN

        while not self.cancelled:
            tick += 1
            detailed = await self._query(self.store.get_detailed_analysis, deadline)
            if detailed is _CANCELLED:
                return
            if detailed is _EXPIRED:
                yield self._timed_out(tick, start)
                return
            if detailed is not None:
                log.info("Detailed analysis found for submission %s at tick %d", self.submission_id, tick)
                yield PollEvent(PollState.FOUND_DETAILED, tick, self._clock() - start,
                                detailed=normalize_detailed(detailed))
                return

            legacy = await self._query(self.store.get_analysis, deadline)
            if legacy is _CANCELLED:
                return
            if legacy is _EXPIRED:
                yield self._timed_out(tick, start)
                return
            if legacy is not None:
                legacy_id = getattr(legacy, "id", None)
                if legacy_id != last_legacy_id:
                    last_legacy_id = legacy_id
                    log.info("Legacy analysis found for submission %s at tick %d", self.submission_id, tick)
                    yield PollEvent(PollState.FOUND_LEGACY, tick, self._clock() - start,
                                    legacy=normalize_legacy(legacy))
            else:
                log.debug("No analysis yet for submission %s (tick %d)", self.submission_id, tick)
                yield PollEvent(PollState.PENDING, tick, self._clock() - start)

            if self.cancelled:
                return
            remaining = deadline - self._clock()
            final = remaining <= self.interval
            if remaining > 0 and await self._sleep(min(self.interval, remaining)):
                return
            if final:
                yield self._timed_out(tick, start)
                return

    def _timed_out(self, tick: int, start: float) -> PollEvent:
        log.info("Polling timed out for submission %s after %d ticks", self.submission_id, tick)
        return PollEvent(PollState.TIMEOUT, tick, self._clock() - start)

    async def _query(self, fetch: Callable[[str], Awaitable[Any]], deadline: float) -> Any:
        """Run one store query, racing it against cancellation and the poll deadline."""
        if self.cancelled:
            return _CANCELLED
        self._in_flight = True
        query = asyncio.ensure_future(fetch(self.submission_id))
        stop = asyncio.ensure_future(self._cancel_event.wait())
        finished = False
        try:
            await asyncio.wait(
                {query, stop},
                timeout=max(0.0, deadline - self._clock()),
                return_when=asyncio.FIRST_COMPLETED,
            )
            finished = query.done()
        finally:
            self._in_flight = False
            stop.cancel()
            if not query.done():
                query.cancel()
                query.add_done_callback(_drain)
        if self.cancelled:
            if finished:
                _drain(query)
            return _CANCELLED
        if not finished:
            log.info("Query for submission %s still running at the poll deadline", self.submission_id)
            return _EXPIRED
        return query.result()

    async def _sleep(self, seconds: float) -> bool:
        """Wait between ticks; returns True if cancelled meanwhile."""
        try:
            await asyncio.wait_for(self._cancel_event.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            return False
        return True


class PollSupervisor:
    """Keeps at most one live poller per consumer.

    Starting a poll for a new submission cancels the previous one first, so
    two pollers never report into the same display.
    """

    def __init__(
        self,
        store: AnalysisSource,
        *,
        interval: float = DEFAULT_POLL_INTERVAL,
        timeout: float = DEFAULT_POLL_TIMEOUT,
    ):
        self.store = store
        self.interval = interval
        self.timeout = timeout
        self._active: AnalysisPoller | None = None

    @property
    def active(self) -> AnalysisPoller | None:
        return self._active

    def start(
        self, submission_id: str, *, interval: float | None = None, timeout: float | None = None,
    ) -> AnalysisPoller:
        self.cancel()
        self._active = AnalysisPoller(
            self.store, submission_id,
            interval=interval or self.interval,
            timeout=timeout or self.timeout,
        )
        return self._active

    def cancel(self) -> None:
        if self._active is not None:
            self._active.cancel()
            self._active = None


# ---------------------------------------------------------------------------
# One-shot lookups
# ---------------------------------------------------------------------------


async def check_analysis(store: AnalysisSource, submission_id: str) -> PollEvent:
    """A single poll tick, for a manual "check again" after a timeout."""
    detailed = await store.get_detailed_analysis(submission_id)
    if detailed is not None:
        return PollEvent(PollState.FOUND_DETAILED, 1, 0.0, detailed=normalize_detailed(detailed))
    legacy = await store.get_analysis(submission_id)
    if legacy is not None:
        return PollEvent(PollState.FOUND_LEGACY, 1, 0.0, legacy=normalize_legacy(legacy))
    return PollEvent(PollState.PENDING, 1, 0.0)


@dataclass
class AnalysisLookup:
    detailed: NormalizedDetailedAnalysis | None = None
    legacy: NormalizedLegacyAnalysis | None = None

    def to_out(self) -> AnalysisLookupOut:
        return AnalysisLookupOut(detailed=self.detailed, legacy=self.legacy)


async def lookup_by_institution_name(store: Any, name: str) -> AnalysisLookup:
    """Newest analyses recorded under *name* (case-insensitive), for the duplicate path."""
    name = validate_institution_name(name)
    detailed = await store.find_detailed_analysis_by_name(name)
    legacy = await store.find_analysis_by_name(name)
    return AnalysisLookup(
        detailed=normalize_detailed(detailed) if detailed is not None else None,
        legacy=normalize_legacy(legacy) if legacy is not None else None,
    )
