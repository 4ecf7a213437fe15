from __future__ import annotations

import asyncio

import pytest

LP_OWNER = "5Q544fKrFoe6tsEbD7S8EmxGTJYAKtTVhAW5Q5pge4j1"
QUOTE = "So11111111111111111111111111111111111111112"
BASE = "EPjFWdd5AufqSSqeM2qN1xzybapC8G4wEGGkZwyTDt1v"
CREATOR = "9xQeWvG816bUx9EPm2Tbd2Ykqg3k9uADuZbL9g1z3Q2E"


def pool_tx(quote_only=False, err=None):
    post = [
        {"owner": LP_OWNER, "mint": QUOTE, "uiTokenAmount": {"decimals": 9, "uiAmount": 5.0}},
    ]
    if not quote_only:
        post.append(
            {"owner": LP_OWNER, "mint": BASE, "uiTokenAmount": {"decimals": 6, "uiAmount": 1000.0}}
        )
    return {
        "slot": 1,
        "transaction": {"signatures": ["x"], "message": {"accountKeys": [CREATOR]}},
        "meta": {"err": err, "postTokenBalances": post},
    }


class FakeGateway:
    def __init__(self, txs, fail_every=None):
        self.txs = txs
        self.fail_every = fail_every
        self.calls = 0
        self.fetched = []

    async def get_transaction(self, signature):
        from pool_watch_engine.errors import TransportError

        self.calls += 1
        await asyncio.sleep(0)
        if self.fail_every and self.calls % self.fail_every == 0:
            raise TransportError("connection reset", operation="get_transaction")
        self.fetched.append(signature)
        return self.txs.get(signature)


class ListDetector:
    def __init__(self, signatures, then=None):
        from pool_watch_engine.models import CandidateEvent

        self.items = [CandidateEvent.for_signature(s) for s in signatures]
        self.then = then
        self.closed = False

    def __aiter__(self):
        return self

    async def __anext__(self):
        if self.items:
            return self.items.pop(0)
        if self.then == "block":
            await asyncio.Event().wait()
        if self.then is not None:
            raise self.then
        raise StopAsyncIteration

    async def aclose(self):
        self.closed = True


async def _no_sleep(_delay):
    return None


def make_driver(tmp_path, detectors, gateway, retry_attempts=1, reconnect_attempts=3, **kw):
    from pool_watch_engine.extraction.extractor import EventExtractor
    from pool_watch_engine.pipeline import PipelineDriver
    from pool_watch_engine.retry import Backoff, RetryPolicy
    from pool_watch_engine.store import EventStore

    store = kw.pop("store", None)
    if store is None:
        store = EventStore(tmp_path / "events.jsonl", tmp_path / "errors.txt")
        store.open()
    queue = list(detectors)
    driver = PipelineDriver(
        detector_factory=lambda previous: queue.pop(0),
        extractor=EventExtractor(gateway=gateway, quote_mint=QUOTE, lp_owner=LP_OWNER),
        store=store,
        retry=RetryPolicy(attempts=retry_attempts, backoff=Backoff(base=0.1), sleep=_no_sleep),
        reconnect=RetryPolicy(attempts=reconnect_attempts, backoff=Backoff(base=0.1), sleep=_no_sleep),
        **kw,
    )
    return driver, store


def event_lines(tmp_path):
    path = tmp_path / "events.jsonl"
    return path.read_text().splitlines() if path.exists() else []


def failure_lines(tmp_path):
    path = tmp_path / "errors.txt"
    return path.read_text().splitlines() if path.exists() else []


def test_same_signature_twice_is_stored_once(tmp_path):
    gw = FakeGateway({"sig1": pool_tx(), "sig2": pool_tx()})
    driver, store = make_driver(tmp_path, [ListDetector(["sig1", "sig1", "sig2"])], gw)
    try:
        stats = asyncio.run(driver.run())
    finally:
        store.close()
    assert len(event_lines(tmp_path)) == 2
    assert stats.stored == 2
    assert stats.duplicates == 1
    assert gw.fetched == ["sig1", "sig2"]


def test_incomplete_transaction_yields_one_failure_entry(tmp_path):
    gw = FakeGateway({"sig1": pool_tx(quote_only=True)})
    driver, store = make_driver(tmp_path, [ListDetector(["sig1"])], gw)
    try:
        stats = asyncio.run(driver.run())
    finally:
        store.close()
    assert event_lines(tmp_path) == []
    lines = failure_lines(tmp_path)
    assert len(lines) == 1
    assert "signature sig1" in lines[0] and "IncompleteBalances" in lines[0]
    assert stats.failed == 1


def test_failed_transactions_are_skipped_quietly(tmp_path):
    gw = FakeGateway({"sig1": pool_tx(err={"InstructionError": [0, "Custom"]})})
    driver, store = make_driver(tmp_path, [ListDetector(["sig1"])], gw)
    try:
        stats = asyncio.run(driver.run())
    finally:
        store.close()
    assert stats.ignored == 1
    assert event_lines(tmp_path) == []
    assert failure_lines(tmp_path) == []


def test_loop_survives_gateway_failing_every_third_call(tmp_path):
    sigs = [f"sig{i}" for i in range(1, 7)]
    gw = FakeGateway({s: pool_tx() for s in sigs}, fail_every=3)
    driver, store = make_driver(tmp_path, [ListDetector(sigs)], gw, retry_attempts=1)
    try:
        stats = asyncio.run(driver.run())
    finally:
        store.close()
    stored = [line.split('"signature":"')[1].split('"')[0] for line in event_lines(tmp_path)]
    assert stored == ["sig1", "sig2", "sig4", "sig5"]
    assert stats.failed == 2
    assert len(failure_lines(tmp_path)) == 2


def test_retries_recover_every_candidate(tmp_path):
    sigs = [f"sig{i}" for i in range(1, 7)]
    gw = FakeGateway({s: pool_tx() for s in sigs}, fail_every=3)
    driver, store = make_driver(tmp_path, [ListDetector(sigs)], gw, retry_attempts=3)
    try:
        stats = asyncio.run(driver.run())
    finally:
        store.close()
    assert stats.stored == 6
    assert stats.failed == 0
    assert failure_lines(tmp_path) == []


def test_restart_does_not_reappend_known_signatures(tmp_path):
    gw = FakeGateway({"sig1": pool_tx(), "sig2": pool_tx()})
    driver, store = make_driver(tmp_path, [ListDetector(["sig1"])], gw)
    try:
        asyncio.run(driver.run())
    finally:
        store.close()

    gw2 = FakeGateway({"sig1": pool_tx(), "sig2": pool_tx()})
    driver2, store2 = make_driver(tmp_path, [ListDetector(["sig1", "sig2", "sig1"])], gw2)
    try:
        stats = asyncio.run(driver2.run())
    finally:
        store2.close()
    assert len(event_lines(tmp_path)) == 2
    assert gw2.fetched == ["sig2"]
    assert stats.duplicates == 2


def test_new_pool_hook_receives_events_and_its_errors_are_contained(tmp_path):
    seen = []

    async def hook(event):
        seen.append(event.signature)
        if event.signature == "sig1":
            raise RuntimeError("downstream offline")

    gw = FakeGateway({"sig1": pool_tx(), "sig2": pool_tx()})
    driver, store = make_driver(tmp_path, [ListDetector(["sig1", "sig2"])], gw, on_new_pool=hook)
    try:
        stats = asyncio.run(driver.run())
    finally:
        store.close()
    assert seen == ["sig1", "sig2"]
    assert stats.stored == 2


def test_broken_detector_is_reestablished_with_backoff_then_gives_up(tmp_path):
    from pool_watch_engine.errors import RetryExhausted, SubscriptionClosed

    sleeps = []

    async def record_sleep(delay):
        sleeps.append(delay)

    closed = SubscriptionClosed("socket dropped")
    detectors = [ListDetector(["sig1"], then=closed), ListDetector([], then=closed), ListDetector([], then=closed)]
    gw = FakeGateway({"sig1": pool_tx()})
    driver, store = make_driver(tmp_path, detectors, gw, reconnect_attempts=3)
    driver.reconnect.sleep = record_sleep
    try:
        with pytest.raises(RetryExhausted) as info:
            asyncio.run(driver.run())
    finally:
        store.close()
    assert info.value.attempts == 3
    assert sleeps == pytest.approx([0.1, 0.2])
    assert all(d.closed for d in detectors)
    assert driver.stats.reconnects == 2
    assert len(event_lines(tmp_path)) == 1
    assert sum("SubscriptionClosed" in line for line in failure_lines(tmp_path)) == 3


def test_reconnect_recovers_and_keeps_going(tmp_path):
    from pool_watch_engine.errors import SubscriptionClosed

    detectors = [
        ListDetector(["sig1"], then=SubscriptionClosed("dropped")),
        ListDetector(["sig2"]),
    ]
    gw = FakeGateway({"sig1": pool_tx(), "sig2": pool_tx()})
    driver, store = make_driver(tmp_path, detectors, gw)
    try:
        stats = asyncio.run(driver.run())
    finally:
        store.close()
    assert stats.stored == 2
    assert stats.reconnects == 1


def test_stop_request_interrupts_a_waiting_detector(tmp_path):
    detector = ListDetector(["sig1"], then="block")
    gw = FakeGateway({"sig1": pool_tx()})
    driver, store = make_driver(tmp_path, [detector], gw)
    driver.on_new_pool = lambda event: driver.request_stop()
    try:
        stats = asyncio.run(driver.run())
    finally:
        store.close()
    assert stats.stored == 1
    assert detector.closed


def test_cancellation_closes_the_detector(tmp_path):
    detector = ListDetector(["sig1"], then="block")
    gw = FakeGateway({"sig1": pool_tx()})
    driver, store = make_driver(tmp_path, [detector], gw)

    async def go():
        task = asyncio.create_task(driver.run())
        while driver.stats.stored < 1:
            await asyncio.sleep(0)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

    try:
        asyncio.run(go())
    finally:
        store.close()
    assert detector.closed


def test_concurrent_extraction_of_same_signature_appends_once(tmp_path):
    gw = FakeGateway({"sig1": pool_tx(), "sig2": pool_tx()})
    driver, store = make_driver(
        tmp_path, [ListDetector(["sig1", "sig1", "sig1", "sig2"])], gw, max_in_flight=3
    )
    try:
        stats = asyncio.run(driver.run())
    finally:
        store.close()
    assert len(event_lines(tmp_path)) == 2
    assert stats.stored == 2
    assert stats.duplicates == 2


def test_persistence_failure_is_recorded_and_loop_continues(tmp_path):
    from pool_watch_engine.store import EventStore

    unopened = EventStore(tmp_path / "events.jsonl", tmp_path / "errors.txt")
    gw = FakeGateway({"sig1": pool_tx(), "sig2": pool_tx()})
    driver, _ = make_driver(tmp_path, [ListDetector(["sig1", "sig2"])], gw, store=unopened)
    stats = asyncio.run(driver.run())
    assert stats.stored == 0
    assert stats.failed == 2
    assert all("PersistenceError" in line for line in failure_lines(tmp_path))


def test_create_wires_settings(tmp_path):
    from pool_watch_engine.config import AppSettings
    from pool_watch_engine.detection.detector import PollingDetector
    from pool_watch_engine.pipeline import PipelineDriver
    from pool_watch_engine.store import EventStore

    settings = AppSettings(
        strategy="poll",
        retry_attempts=4,
        reconnect_attempts=7,
        backoff_base_sec=0.2,
        max_in_flight=2,
        log_marker="",
    )
    store = EventStore(tmp_path / "events.jsonl", tmp_path / "errors.txt")
    driver = PipelineDriver.create(settings, gateway=object(), store=store)
    assert driver.retry.attempts == 4
    assert driver.reconnect.attempts == 7
    assert driver.retry.backoff.base == 0.2
    assert driver.max_in_flight == 2
    assert driver.extractor.quote_mint == settings.quote_mint
    assert driver.extractor.log_marker is None
    assert isinstance(driver.detector_factory(None), PollingDetector)


def test_malformed_snapshots_go_through_reconnect_policy(tmp_path):
    from pool_watch_engine.detection.detector import PollingDetector
    from pool_watch_engine.errors import DetectorBroken, RetryExhausted

    class GarbledGateway(FakeGateway):
        async def snapshot(self, program_id, data_size):
            raise ValueError("invalid type: null, expected a sequence")

    gw = GarbledGateway({})
    detectors = [
        PollingDetector(gw, "prog", 752, interval=0, sleep=_no_sleep) for _ in range(3)
    ]
    driver, store = make_driver(tmp_path, detectors, gw, reconnect_attempts=3)
    try:
        with pytest.raises(RetryExhausted) as info:
            asyncio.run(driver.run())
    finally:
        store.close()
    assert isinstance(info.value.last_error, DetectorBroken)
    assert driver.stats.reconnects == 2
    assert len(failure_lines(tmp_path)) == 3


def test_detector_raising_arbitrary_error_is_reconnected(tmp_path):
    detectors = [
        ListDetector(["sig1"], then=RuntimeError("decoder bug")),
        ListDetector(["sig2"]),
    ]
    gw = FakeGateway({"sig1": pool_tx(), "sig2": pool_tx()})
    driver, store = make_driver(tmp_path, detectors, gw)
    try:
        stats = asyncio.run(driver.run())
    finally:
        store.close()
    assert stats.stored == 2
    assert stats.reconnects == 1
    assert all(d.closed for d in detectors)
    [line] = failure_lines(tmp_path)
    assert "detector" in line and "RuntimeError" in line
