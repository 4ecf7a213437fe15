from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Callable

from loguru import logger

from pool_watch_engine.chains.gateway import ChainGateway
from pool_watch_engine.config import AppSettings
from pool_watch_engine.detection.detector import Detector, make_detector
from pool_watch_engine.errors import (
    DetectorBroken,
    ExtractionError,
    IncompleteBalances,
    PersistenceError,
    RetryExhausted,
)
from pool_watch_engine.extraction.extractor import EventExtractor
from pool_watch_engine.models import CandidateEvent, PoolEvent
from pool_watch_engine.notify import NewPoolHook, call_hook, log_new_pool
from pool_watch_engine.retry import Backoff, RetryPolicy
from pool_watch_engine.store import EventStore

DetectorFactory = Callable[["Detector | None"], Detector]


@dataclass
class PipelineStats:
    processed: int = 0
    stored: int = 0
    duplicates: int = 0
    ignored: int = 0
    failed: int = 0
    reconnects: int = 0


class PipelineDriver:
    """Detector -> Extractor -> Store loop with per-candidate isolation.

    Nothing raised while handling one candidate escapes ``process``. The run
    only ends when a stop is requested, the detector finishes on its own, or
    the detector keeps breaking after ``reconnect.attempts`` re-establishments
    (``RetryExhausted``).
    """

    def __init__(
        self,
        detector_factory: DetectorFactory,
        extractor: EventExtractor,
        store: EventStore,
        on_new_pool: NewPoolHook = log_new_pool,
        retry: RetryPolicy | None = None,
        reconnect: RetryPolicy | None = None,
        max_in_flight: int = 1,
    ):
        self.detector_factory = detector_factory
        self.extractor = extractor
        self.store = store
        self.on_new_pool = on_new_pool
        self.retry = retry or RetryPolicy()
        self.reconnect = reconnect or RetryPolicy(attempts=10)
        self.max_in_flight = max_in_flight
        self.stats = PipelineStats()
        self._stop = asyncio.Event()
        self._inflight: set[asyncio.Task] = set()
        self._slots = asyncio.Semaphore(max_in_flight)

    @classmethod
    def create(
        cls,
        settings: AppSettings,
        gateway: ChainGateway,
        store: EventStore,
        on_new_pool: NewPoolHook = log_new_pool,
    ) -> PipelineDriver:
        backoff = Backoff(
            base=settings.backoff_base_sec,
            factor=settings.backoff_factor,
            cap=settings.backoff_max_sec,
        )
        return cls(
            detector_factory=lambda previous: make_detector(settings, gateway, previous),
            extractor=EventExtractor.create(settings, gateway),
            store=store,
            on_new_pool=on_new_pool,
            retry=RetryPolicy(attempts=settings.retry_attempts, backoff=backoff),
            reconnect=RetryPolicy(attempts=settings.reconnect_attempts, backoff=backoff),
            max_in_flight=settings.max_in_flight,
        )

    def request_stop(self) -> None:
        logger.info("Stop requested; shutting down pipeline.")
        self._stop.set()

    @property
    def stopping(self) -> bool:
        return self._stop.is_set()

    async def run(self) -> PipelineStats:
        previous: Detector | None = None
        breaks = 0
        try:
            while not self.stopping:
                detector = self.detector_factory(previous)
                previous = detector
                try:
                    while True:
                        candidate = await self._next_candidate(detector)
                        if candidate is None:
                            return self.stats
                        breaks = 0
                        await self._dispatch(candidate)
                except DetectorBroken as e:
                    breaks += 1
                    self.store.log_failure("detector", e)
                    if breaks >= self.reconnect.attempts:
                        logger.error("Detector source lost after {} attempt(s): {}", breaks, e)
                        raise RetryExhausted(
                            f"detector could not be re-established: {e}",
                            attempts=breaks,
                            last_error=e,
                        ) from e
                    delay = self.reconnect.backoff.delay(breaks)
                    logger.warning(
                        "Detector broke ({}/{}), reconnecting in {:.2f}s: {}",
                        breaks,
                        self.reconnect.attempts,
                        delay,
                        e,
                    )
                    self.stats.reconnects += 1
                    await self._pause(delay)
                finally:
                    await detector.aclose()
        except asyncio.CancelledError:
            for task in self._inflight:
                task.cancel()
            raise
        finally:
            await self._drain()
        return self.stats

    async def _next_candidate(self, detector: Detector) -> CandidateEvent | None:
        """Next candidate, or None once stopped or the detector is exhausted."""
        if self.stopping:
            return None
        nxt = asyncio.ensure_future(anext(detector))
        stop = asyncio.ensure_future(self._stop.wait())
        try:
            await asyncio.wait({nxt, stop}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            stop.cancel()
            if not nxt.done():
                nxt.cancel()
                await asyncio.gather(nxt, return_exceptions=True)
        if nxt.cancelled():
            return None
        try:
            return nxt.result()
        except StopAsyncIteration:
            logger.info("Detector exhausted; pipeline finished.")
            return None
        except DetectorBroken:
            raise
        except Exception as e:
            logger.exception("Detector raised unexpectedly: {}", e)
            raise DetectorBroken(f"detector failed: {type(e).__name__}: {e}") from e

    async def _pause(self, delay: float) -> None:
        if delay <= 0:
            return
        waiter = asyncio.ensure_future(self._stop.wait())
        sleeper = asyncio.ensure_future(self.reconnect.sleep(delay))
        try:
            await asyncio.wait({waiter, sleeper}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            waiter.cancel()
            sleeper.cancel()

    async def _dispatch(self, candidate: CandidateEvent) -> None:
        if self.max_in_flight <= 1:
            await self.process(candidate)
            return
        await self._slots.acquire()
        task = asyncio.create_task(self._process_in_slot(candidate))
        self._inflight.add(task)
        task.add_done_callback(self._inflight.discard)

    async def _process_in_slot(self, candidate: CandidateEvent) -> None:
        try:
            await self.process(candidate)
        finally:
            self._slots.release()

    async def _drain(self) -> None:
        if self._inflight:
            await asyncio.gather(*list(self._inflight), return_exceptions=True)

    def _record_failure(self, candidate: CandidateEvent, error: BaseException) -> None:
        self.stats.failed += 1
        self.store.log_failure(candidate.describe(), error)

    async def process(self, candidate: CandidateEvent) -> PoolEvent | None:
        self.stats.processed += 1
        if candidate.signature and self.store.contains(candidate.signature):
            self.stats.duplicates += 1
            logger.debug("Already stored: {}", candidate.signature)
            return None

        try:
            event = await self.retry.call(self.extractor.extract, candidate)
        except ExtractionError as e:
            logger.warning("Could not extract {}: {}", candidate.describe(), e)
            self._record_failure(candidate, e)
            return None
        except RetryExhausted as e:
            logger.warning("Giving up on {}: {}", candidate.describe(), e)
            self._record_failure(candidate, e.last_error or e)
            return None
        except Exception as e:
            logger.exception("Unexpected error while extracting {}: {}", candidate.describe(), e)
            self._record_failure(candidate, e)
            return None

        if event is None:
            self.stats.ignored += 1
            return None
        if not event.is_complete():
            self._record_failure(
                candidate,
                IncompleteBalances(
                    f"expected 2 tokens, got {len(event.tokens)}", signature=event.signature
                ),
            )
            return None

        try:
            outcome = self.store.append(event)
        except PersistenceError as e:
            logger.critical("Pool event {} was NOT persisted: {}", event.signature, e)
            self._record_failure(candidate, e)
            return None
        if not outcome.appended:
            self.stats.duplicates += 1
            return None

        self.stats.stored += 1
        if outcome.rotation_needed:
            logger.warning(
                "Event log {} is {} bytes (threshold {}); rotation needed",
                self.store.events_path,
                outcome.size_bytes,
                self.store.rotation_threshold_bytes,
            )
        await call_hook(self.on_new_pool, event)
        return event
