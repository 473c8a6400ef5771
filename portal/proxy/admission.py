"""Per-client-IP connection admission for the tunnel-protocol handler.

Fixed-window limiter with a temporary block:

  - Each client IP owns one AdmissionRecord (count, window_start, blocked_until).
  - While ``blocked_until`` lies in the future every attempt is rejected.
  - A window older than ``window_duration`` is reset before counting.
  - The attempt that pushes ``count`` past ``max_connections_per_ip`` starts a
    block of ``block_duration`` seconds.

O(1) per call and one small record per active IP. The count tracks admitted
tunnel connections, not concurrent ones: nothing is decremented on close, so a
window may briefly over-admit in exchange for constant bookkeeping.

Locking:
  The table lock guards dict membership only; each record has its own lock
  for the count/threshold step. Calls for different IPs never wait on each
  other's record lock. reclaim_stale() takes the same record lock as admit()
  and marks evicted records, so an admit() that raced an eviction retries on a
  fresh record instead of updating a detached one.

Example:
    controller = AdmissionController(AdmissionConfig(max_connections_per_ip=3))

    decision = controller.admit("1.2.3.4")
    if not decision.allowed:
        return 429, {"Retry-After": str(decision.retry_after)}
"""

from __future__ import annotations

import asyncio
import math
import threading
import time
from dataclasses import dataclass, field
from typing import Callable, Optional

from portal.config import AdmissionConfig
from portal.utils.logger import get_logger

logger = get_logger(__name__)


@dataclass
class AdmissionRecord:
    """Mutable per-IP state. Only touched while holding ``lock``."""

    count: int
    window_start: float
    last_seen: float
    blocked_until: Optional[float] = None
    evicted: bool = False
    lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)


@dataclass(frozen=True)
class AdmissionDecision:
    """Result of one admit() call.

    ``retry_after`` is the whole number of seconds until the client may try
    again; 0 when allowed.
    """

    allowed: bool
    retry_after: int = 0

    @classmethod
    def allow(cls) -> "AdmissionDecision":
        return cls(allowed=True)

    @classmethod
    def reject(cls, retry_after: int) -> "AdmissionDecision":
        return cls(allowed=False, retry_after=retry_after)


@dataclass(frozen=True)
class AdmissionStats:
    tracked: int
    blocked: int


class AdmissionController:
    """Decides whether a new tunnel connection from a client IP may proceed."""

    def __init__(
        self,
        config: Optional[AdmissionConfig] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._config = config or AdmissionConfig()
        self._clock = clock
        self._records: dict[str, AdmissionRecord] = {}
        self._table_lock = threading.Lock()

    @property
    def config(self) -> AdmissionConfig:
        return self._config

    def admit(self, client_ip: str) -> AdmissionDecision:
        """Count one connection attempt from *client_ip* and decide on it.

        Args:
            client_ip: Address the attempt is attributed to.

        Returns:
            AdmissionDecision.allow() or AdmissionDecision.reject(retry_after).
        """
        while True:
            record = self._get_or_create(client_ip)
            with record.lock:
                if record.evicted:
                    # Reclaimed between lookup and lock; use a fresh record.
                    continue
                return self._admit_locked(client_ip, record, self._clock())

    def _get_or_create(self, client_ip: str) -> AdmissionRecord:
        with self._table_lock:
            record = self._records.get(client_ip)
            if record is None:
                now = self._clock()
                record = AdmissionRecord(count=0, window_start=now, last_seen=now)
                self._records[client_ip] = record
            return record

    def _admit_locked(
        self, client_ip: str, record: AdmissionRecord, now: float
    ) -> AdmissionDecision:
        record.last_seen = now
        cfg = self._config

        if record.blocked_until is not None:
            if record.blocked_until > now:
                return AdmissionDecision.reject(math.ceil(record.blocked_until - now))
            record.blocked_until = None

        if now - record.window_start >= cfg.window_duration:
            record.count = 0
            record.window_start = now

        record.count += 1
        if record.count > cfg.max_connections_per_ip:
            record.blocked_until = now + cfg.block_duration
            logger.warning(
                "client_blocked",
                client_ip=client_ip,
                count=record.count,
                limit=cfg.max_connections_per_ip,
                block_duration=cfg.block_duration,
            )
            return AdmissionDecision.reject(cfg.block_duration)

        return AdmissionDecision.allow()

    def reclaim_stale(self, now: Optional[float] = None) -> int:
        """Drop records idle for ``reclaim_after_windows`` windows and not blocked.

        Returns:
            Number of records removed.
        """
        if now is None:
            now = self._clock()
        max_idle = self._config.window_duration * self._config.reclaim_after_windows

        with self._table_lock:
            candidates = list(self._records.items())

        removed = 0
        for client_ip, record in candidates:
            # An admit() in progress holds the lock; that record is not idle.
            if not record.lock.acquire(blocking=False):
                continue
            try:
                blocked = record.blocked_until is not None and record.blocked_until > now
                if blocked or now - record.last_seen < max_idle:
                    continue
                record.evicted = True
                with self._table_lock:
                    if self._records.get(client_ip) is record:
                        del self._records[client_ip]
                        removed += 1
            finally:
                record.lock.release()

        if removed:
            logger.debug("admission_records_reclaimed", removed=removed, remaining=len(self._records))
        return removed

    async def run_reclaimer(self, interval: Optional[float] = None) -> None:
        """Call reclaim_stale() every *interval* seconds until cancelled.

        Defaults to one window duration. Intended to run as an asyncio task
        owned by the application lifespan.
        """
        period = interval if interval is not None else float(self._config.window_duration)
        while True:
            await asyncio.sleep(period)
            self.reclaim_stale()

    def stats(self, now: Optional[float] = None) -> AdmissionStats:
        if now is None:
            now = self._clock()
        with self._table_lock:
            records = list(self._records.values())
        blocked = sum(
            1 for r in records if r.blocked_until is not None and r.blocked_until > now
        )
        return AdmissionStats(tracked=len(records), blocked=blocked)

    def __len__(self) -> int:
        return len(self._records)
