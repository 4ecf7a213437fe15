from __future__ import annotations

import asyncio
from collections import deque
from typing import AsyncIterator, Awaitable, Callable, Protocol

from loguru import logger

from pool_watch_engine.chains.gateway import ChainGateway, LogNotification
from pool_watch_engine.config import AppSettings
from pool_watch_engine.errors import DetectorBroken, SubscriptionClosed, TransportError
from pool_watch_engine.models import CandidateEvent


class Detector(Protocol):
    """Async source of candidates; ``__anext__`` suspends until one is ready."""

    def __aiter__(self) -> AsyncIterator[CandidateEvent]: ...

    async def __anext__(self) -> CandidateEvent: ...

    async def aclose(self) -> None: ...


class PollingDetector:
    """Diff-polls the program's pool accounts.

    ``known`` is replaced by each successful snapshot rather than unioned, so
    an account that disappears and comes back is reported again. The first
    snapshot only establishes the baseline unless a seed was given.
    """

    def __init__(
        self,
        gateway: ChainGateway,
        program_id: str,
        account_size: int,
        interval: float = 1.0,
        max_consecutive_failures: int = 5,
        known: frozenset[str] | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.gateway = gateway
        self.program_id = program_id
        self.account_size = account_size
        self.interval = interval
        self.max_consecutive_failures = max_consecutive_failures
        self.known = known
        self.sleep = sleep
        self._pending: deque[CandidateEvent] = deque()
        self._failures = 0
        self._ticked = False

    def __aiter__(self) -> PollingDetector:
        return self

    async def __anext__(self) -> CandidateEvent:
        while not self._pending:
            if self._ticked:
                await self.sleep(self.interval)
            await self.tick()
        return self._pending.popleft()

    async def tick(self) -> list[CandidateEvent]:
        self._ticked = True
        try:
            current = frozenset(await self.gateway.snapshot(self.program_id, self.account_size))
        except TransportError as e:
            self._failures += 1
            logger.warning(
                "Pool snapshot failed ({}/{}): {}",
                self._failures,
                self.max_consecutive_failures,
                e,
            )
            if self._failures > self.max_consecutive_failures:
                raise DetectorBroken(
                    f"{self._failures} consecutive snapshot failures: {e}"
                ) from e
            return []
        except Exception as e:
            logger.exception("Pool snapshot raised unexpectedly: {}", e)
            raise DetectorBroken(f"snapshot failed unexpectedly: {type(e).__name__}: {e}") from e
        self._failures = 0

        if self.known is None:
            self.known = current
            logger.info("Found {} existing pools", len(current))
            return []

        fresh = [CandidateEvent.for_account(addr) for addr in current - self.known]
        self.known = current
        if fresh:
            logger.info("Snapshot: {} new pool account(s)", len(fresh))
        self._pending.extend(fresh)
        return fresh

    async def aclose(self) -> None:
        self._pending.clear()


class SubscriptionDetector:
    """Wraps a logs subscription on the pool-creation fee address.

    The end of the stream is never a normal stop: it raises
    ``SubscriptionClosed`` so the driver can resubscribe.
    """

    def __init__(self, gateway: ChainGateway, address: str, lookback_limit: int = 0):
        self.gateway = gateway
        self.address = address
        self.lookback_limit = lookback_limit
        self._stream: AsyncIterator[LogNotification] | None = None
        self._pending: deque[CandidateEvent] = deque()
        self._closed = False

    def __aiter__(self) -> SubscriptionDetector:
        return self

    async def _open(self) -> None:
        if self.lookback_limit:
            try:
                sigs = await self.gateway.get_signatures(self.address, self.lookback_limit)
            except TransportError as e:
                logger.warning("Lookback of {} failed, continuing live only: {}", self.address, e)
            else:
                logger.info("Replaying {} recent signature(s) for {}", len(sigs), self.address)
                self._pending.extend(CandidateEvent.for_signature(s) for s in reversed(sigs))
        self._stream = aiter(self.gateway.subscribe(self.address))

    async def __anext__(self) -> CandidateEvent:
        if self._closed:
            raise SubscriptionClosed(f"subscription to {self.address} already closed")
        try:
            if self._stream is None:
                await self._open()
            if self._pending:
                return self._pending.popleft()
            note = await anext(self._stream)
        except StopAsyncIteration:
            self._closed = True
            raise SubscriptionClosed(f"subscription to {self.address} ended") from None
        except TransportError as e:
            self._closed = True
            raise SubscriptionClosed(f"subscription to {self.address} failed: {e}") from e
        except Exception as e:
            self._closed = True
            logger.exception("Subscription to {} raised unexpectedly: {}", self.address, e)
            raise SubscriptionClosed(
                f"subscription to {self.address} failed unexpectedly: {type(e).__name__}: {e}"
            ) from e
        return CandidateEvent.for_signature(note.signature, note.logs, note.failed)

    async def aclose(self) -> None:
        self._closed = True
        stream, self._stream = self._stream, None
        closer = getattr(stream, "aclose", None)
        if closer is not None:
            await closer()


def make_detector(
    settings: AppSettings, gateway: ChainGateway, previous: Detector | None = None
) -> Detector:
    if settings.strategy == "poll":
        known = previous.known if isinstance(previous, PollingDetector) else None
        return PollingDetector(
            gateway,
            program_id=settings.amm_program_id,
            account_size=settings.pool_account_size,
            interval=settings.poll_interval_sec,
            max_consecutive_failures=settings.max_consecutive_failures,
            known=known,
        )
    return SubscriptionDetector(
        gateway,
        address=settings.ray_fee_address,
        # replay only once per run
        lookback_limit=settings.lookback_limit if previous is None else 0,
    )
