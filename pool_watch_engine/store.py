from __future__ import annotations

import os
import threading
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import BinaryIO, Generator, Iterator

from loguru import logger
from pydantic import ValidationError

from pool_watch_engine.config import AppSettings
from pool_watch_engine.errors import PersistenceError
from pool_watch_engine.models import PoolEvent


@dataclass(frozen=True)
class AppendOutcome:
    appended: bool
    rotation_needed: bool
    size_bytes: int


def iter_events(path: str | Path) -> Iterator[PoolEvent]:
    """Read a JSON-lines event log, skipping truncated or corrupt lines."""
    path = Path(path)
    if not path.exists():
        return
    with path.open("rb") as f:
        for lineno, line in enumerate(f, start=1):
            if not line.strip():
                continue
            try:
                yield PoolEvent.model_validate_json(line)
            except (ValidationError, ValueError) as e:
                kind = "truncated" if not line.endswith(b"\n") else "corrupt"
                logger.warning("Skipping {} record at {}:{}: {}", kind, path, lineno, e)


class EventStore:
    """Append-only JSON-lines log of pool events plus a failure log.

    Signatures already in the log are loaded on ``open()``; ``append`` is a
    no-op for them. The dedup check and the write happen under one lock, so
    concurrent extraction of the same candidate cannot produce two records.
    """

    def __init__(
        self,
        events_path: str | Path,
        failures_path: str | Path,
        rotation_threshold_bytes: int = 1_000_000,
    ):
        self.events_path = Path(events_path)
        self.failures_path = Path(failures_path)
        self.rotation_threshold_bytes = rotation_threshold_bytes
        self._signatures: set[str] = set()
        self._size = 0
        self._events: BinaryIO | None = None
        self._lock = threading.Lock()

    def __enter__(self) -> EventStore:
        self.open()
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    def __len__(self) -> int:
        return len(self._signatures)

    @property
    def size_bytes(self) -> int:
        return self._size

    @property
    def rotation_needed(self) -> bool:
        return self._size > self.rotation_threshold_bytes

    def open(self) -> None:
        try:
            self.events_path.parent.mkdir(parents=True, exist_ok=True)
            self.failures_path.parent.mkdir(parents=True, exist_ok=True)
            self._signatures = {ev.signature for ev in iter_events(self.events_path)}
            self._events = self.events_path.open("ab")
            self._size = self.events_path.stat().st_size
            if self._size and not self._ends_with_newline():
                # crash mid-write: close off the partial record
                self._write(b"\n")
        except OSError as e:
            self.close()
            raise PersistenceError(f"cannot open event log {self.events_path}: {e}") from e
        logger.info(
            "Event store {} opened: {} known signature(s), {} bytes",
            self.events_path,
            len(self._signatures),
            self._size,
        )
        if self.rotation_needed:
            logger.warning(
                "Event log {} already exceeds {} bytes; rotation needed",
                self.events_path,
                self.rotation_threshold_bytes,
            )

    def close(self) -> None:
        f, self._events = self._events, None
        if f is not None:
            f.close()

    def _ends_with_newline(self) -> bool:
        with self.events_path.open("rb") as f:
            f.seek(-1, os.SEEK_END)
            return f.read(1) == b"\n"

    def _write(self, data: bytes) -> None:
        if self._events is None:
            raise PersistenceError(f"event store {self.events_path} is not open")
        self._events.write(data)
        self._events.flush()
        os.fsync(self._events.fileno())
        self._size += len(data)

    def contains(self, signature: str) -> bool:
        return signature in self._signatures

    def append(self, event: PoolEvent) -> AppendOutcome:
        line = (event.model_dump_json() + "\n").encode("utf-8")
        with self._lock:
            if self._events is None:
                raise PersistenceError(f"event store {self.events_path} is not open")
            if event.signature in self._signatures:
                return AppendOutcome(False, self.rotation_needed, self._size)
            size_before = self._size
            try:
                self._write(line)
            except OSError as e:
                self._roll_back(size_before)
                raise PersistenceError(
                    f"failed to append {event.signature} to {self.events_path}: {e}"
                ) from e
            self._signatures.add(event.signature)
            return AppendOutcome(True, self.rotation_needed, self._size)

    def _roll_back(self, size: int) -> None:
        """Cut a partially written record off the log and reopen it.

        Buffered bytes are flushed by the close and then truncated away, so
        nothing of the failed record can reach the file later. If the log
        cannot be restored the store stays closed and further appends fail.
        """
        f, self._events = self._events, None
        if f is not None:
            try:
                f.close()
            except OSError as e:
                logger.warning("Closing {} after a failed write: {}", self.events_path, e)
        try:
            os.truncate(self.events_path, size)
            self._events = self.events_path.open("ab")
        except OSError as e:
            logger.critical(
                "Could not restore {} to {} bytes, store is closed: {}", self.events_path, size, e
            )
            return
        self._size = size

    def log_failure(self, context: str, error: BaseException | str) -> None:
        """Best effort: a failure here is reported but never raised."""
        if isinstance(error, BaseException):
            detail = f"{type(error).__name__}: {error}"
        else:
            detail = str(error)
        entry = f"{datetime.now(timezone.utc).isoformat()} | {context} | {detail}"
        line = entry.replace("\n", " ") + "\n"
        try:
            with self._lock, self.failures_path.open("a", encoding="utf-8") as f:
                f.write(line)
        except OSError as e:
            logger.error("Could not write failure log {}: {} (entry: {})", self.failures_path, e, entry)


@contextmanager
def store_scope(settings: AppSettings) -> Generator[EventStore, None, None]:
    store = EventStore(
        settings.events_path,
        settings.failures_path,
        rotation_threshold_bytes=settings.rotation_threshold_bytes,
    )
    store.open()
    try:
        yield store
    finally:
        store.close()
