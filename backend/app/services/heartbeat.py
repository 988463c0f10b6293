"""Job liveness: claim, periodic heartbeat ticks, and shutdown of active tickers."""

from __future__ import annotations

import threading
from contextlib import contextmanager
from typing import Callable, Iterator, Optional

import structlog
from sqlalchemy.orm import sessionmaker

from app.core.settings import Settings
from app.db.session import SessionLocal, session_scope
from app.services import repository
from app.services.repository import ClaimResult

logger = structlog.get_logger(__name__)


class HeartbeatTicker:
    """Background thread calling ``tick_fn(job_id)`` every ``interval_s`` until stopped.

    A tick returning False means the job is no longer processing and ends the ticker.
    """

    def __init__(self, job_id: int, tick_fn: Callable[[int], bool], interval_s: float) -> None:
        self.job_id = job_id
        self.interval_s = interval_s
        self._tick_fn = tick_fn
        self._stopped = threading.Event()
        self._thread = threading.Thread(target=self._run, name=f"heartbeat-{job_id}", daemon=True)

    @property
    def running(self) -> bool:
        return self._thread.is_alive() and not self._stopped.is_set()

    def start(self) -> None:
        self._thread.start()

    def stop(self, timeout: Optional[float] = 5.0) -> None:
        self._stopped.set()
        if self._thread.is_alive() and threading.current_thread() is not self._thread:
            self._thread.join(timeout)

    def _run(self) -> None:
        while not self._stopped.wait(self.interval_s):
            try:
                alive = self._tick_fn(self.job_id)
            except Exception as exc:
                logger.warning("heartbeat_tick_failed", job_id=self.job_id, error=str(exc))
                continue
            if not alive:
                logger.info("heartbeat_stopped_job_not_processing", job_id=self.job_id)
                self._stopped.set()


class HeartbeatRegistry:
    """Tracks live tickers so a shutting-down worker can stop them all."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._tickers: dict[int, HeartbeatTicker] = {}

    def __len__(self) -> int:
        with self._lock:
            return len(self._tickers)

    def register(self, ticker: HeartbeatTicker) -> None:
        with self._lock:
            previous = self._tickers.get(ticker.job_id)
            self._tickers[ticker.job_id] = ticker
        if previous is not None and previous is not ticker:
            previous.stop()

    def unregister(self, job_id: int, ticker: Optional[HeartbeatTicker] = None) -> Optional[HeartbeatTicker]:
        with self._lock:
            current = self._tickers.get(job_id)
            if current is None or (ticker is not None and current is not ticker):
                return None
            return self._tickers.pop(job_id)

    def stop(self, job_id: int) -> bool:
        ticker = self.unregister(job_id)
        if ticker is None:
            return False
        ticker.stop()
        return True

    def stop_all(self) -> int:
        with self._lock:
            tickers = list(self._tickers.values())
            self._tickers.clear()
        for ticker in tickers:
            ticker.stop()
        if tickers:
            logger.info("heartbeats_stopped", count=len(tickers))
        return len(tickers)


heartbeat_registry = HeartbeatRegistry()


class HeartbeatManager:
    def __init__(
        self,
        session_factory: sessionmaker = SessionLocal,
        *,
        interval_s: float = 30.0,
        max_duration_s: float = 1800.0,
        registry: HeartbeatRegistry = heartbeat_registry,
    ) -> None:
        self.session_factory = session_factory
        self.interval_s = interval_s
        self.max_duration_s = max_duration_s
        self.registry = registry

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        session_factory: sessionmaker = SessionLocal,
        registry: HeartbeatRegistry = heartbeat_registry,
    ) -> "HeartbeatManager":
        return cls(
            session_factory,
            interval_s=settings.heartbeat_interval_s,
            max_duration_s=settings.max_job_duration_s,
            registry=registry,
        )

    def start(self, job_id: int) -> ClaimResult:
        """Claim the job: processing, attempts + 1, deadline = now + max duration."""
        with session_scope(self.session_factory) as db:
            return repository.claim_job(db, job_id, max_duration_s=self.max_duration_s)

    def tick(self, job_id: int, attempt: Optional[int] = None) -> bool:
        """Refresh the heartbeat; False once the job is not processing under ``attempt``."""
        with session_scope(self.session_factory) as db:
            alive = repository.heartbeat(db, job_id, attempt=attempt)
        logger.debug("heartbeat_tick", job_id=job_id, attempt=attempt, alive=alive)
        return alive

    def stop(self, job_id: int, ticker: Optional[HeartbeatTicker] = None) -> bool:
        """Stop the job's ticker, or only ``ticker`` when one is given.

        Passing the caller's own ticker keeps a superseded run from stopping the
        ticker of the claim that replaced it.
        """
        if ticker is None:
            return self.registry.stop(job_id)
        self.registry.unregister(job_id, ticker)
        ticker.stop()
        return True

    @contextmanager
    def keepalive(self, job_id: int, attempt: Optional[int] = None) -> Iterator[HeartbeatTicker]:
        """Tick periodically for as long as the block runs."""
        ticker = HeartbeatTicker(job_id, lambda tick_job_id: self.tick(tick_job_id, attempt), self.interval_s)
        self.registry.register(ticker)
        ticker.start()
        try:
            yield ticker
        finally:
            self.registry.unregister(job_id, ticker)
            ticker.stop()
