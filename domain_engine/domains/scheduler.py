"""
Background sweeps for custom domains.

Each periodic loop only queries the store for due work and hands it to the
WorkerPool; the per-domain steps run concurrently under a bounded semaphore
and a per-domain lease, so overlapping sweeps never process one domain twice.
"""

import asyncio
import contextlib
import logging
import uuid
from functools import partial
from typing import Awaitable, Callable, Dict, List, Optional, Set, Tuple

from .certificates import CertificateEngine
from .reconfirmation import ReconfirmationEngine
from .reservations import ReservationManager
from .store import DomainStore
from .verification import VerificationEngine

logger = logging.getLogger("domain_engine.domains.scheduler")

Job = Callable[[], Awaitable]


class WorkerPool:
    """Runs per-domain jobs with bounded concurrency and per-domain exclusivity."""

    def __init__(
        self,
        store: DomainStore,
        max_workers: int = 10,
        lease_ttl: int = 300,
        holder: Optional[str] = None,
    ):
        self.store = store
        self.lease_ttl = lease_ttl
        self.holder = holder or f"worker-{uuid.uuid4().hex[:8]}"
        self._semaphore = asyncio.Semaphore(max_workers)
        self._in_flight: Set[str] = set()
        self._follow_ups: Dict[str, List[Tuple[str, Job]]] = {}
        self._tasks: Set[asyncio.Task] = set()
        self._closing = False

    @property
    def in_flight(self) -> Set[str]:
        return set(self._in_flight)

    def submit(self, domain_id: str, label: str, job: Job, follow_up: bool = False) -> bool:
        """
        Schedule ``job`` for ``domain_id``.

        A domain that is already in flight is skipped (returns False), unless
        ``follow_up`` is set: then the job runs right after the current one,
        under the same lease.
        """
        if domain_id in self._in_flight:
            if follow_up:
                self._follow_ups.setdefault(domain_id, []).append((label, job))
                return True
            logger.debug(f"{label} for {domain_id} skipped, already in flight")
            return False

        self._in_flight.add(domain_id)
        task = asyncio.create_task(self._run(domain_id, label, job))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return True

    async def _run(self, domain_id: str, label: str, job: Job) -> None:
        ran = False
        try:
            async with self._semaphore:
                if not await self.store.acquire_lease(domain_id, self.holder, self.lease_ttl):
                    logger.debug(f"{label} for {domain_id} skipped, leased elsewhere")
                    return
                ran = True
                try:
                    pending = [(label, job)]
                    while pending:
                        current_label, current = pending.pop(0)
                        try:
                            await current()
                        except Exception as e:
                            logger.error(f"{current_label} failed for {domain_id}: {e}", exc_info=True)
                        pending.extend(self._follow_ups.pop(domain_id, []))
                finally:
                    await self.store.release_lease(domain_id, self.holder)
        finally:
            late = self._follow_ups.pop(domain_id, [])
            self._in_flight.discard(domain_id)
            # follow-ups queued while the lease was being released get their own run
            if ran and not self._closing:
                for late_label, late_job in late:
                    self.submit(domain_id, late_label, late_job, follow_up=True)

    async def drain(self) -> None:
        """Wait until every submitted job (and anything it submits) has finished."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def shutdown(self) -> None:
        self._closing = True
        for task in list(self._tasks):
            task.cancel()
        await asyncio.gather(*list(self._tasks), return_exceptions=True)
        self._tasks.clear()


class DomainScheduler:
    """Owns the periodic sweeps: reservations, verification, reconfirmation, SSL."""

    def __init__(
        self,
        reservations: ReservationManager,
        verification: VerificationEngine,
        certificates: CertificateEngine,
        reconfirmation: ReconfirmationEngine,
        pool: WorkerPool,
        reap_interval: float = 60,
        verification_interval: float = 30,
        reconfirmation_interval: float = 86400,
        ssl_interval: float = 60,
    ):
        self.reservations = reservations
        self.verification = verification
        self.certificates = certificates
        self.reconfirmation = reconfirmation
        self.pool = pool
        self.intervals = {
            "reservation": reap_interval,
            "verification": verification_interval,
            "reconfirmation": reconfirmation_interval,
            "ssl": ssl_interval,
        }
        self._tasks: List[asyncio.Task] = []
        self._running = False

    @property
    def is_running(self) -> bool:
        return self._running

    def enqueue_provision(self, domain_id: str) -> None:
        """Hand a freshly verified domain to the certificate engine without waiting."""
        self.pool.submit(
            domain_id,
            "SSL provisioning",
            partial(self.certificates.provision, domain_id),
            follow_up=True,
        )

    # ── Ticks ────────────────────────────────────────────────────────

    async def run_reservations(self, now=None) -> int:
        return await self.reservations.reap_expired(now)

    async def run_verification(self, now=None) -> int:
        submitted = 0
        for domain in await self.verification.due(now):
            if self.pool.submit(domain.id, "verification", partial(self.verification.verify, domain.id, now)):
                submitted += 1
        return submitted

    async def run_reconfirmation(self, now=None) -> int:
        submitted = 0
        for domain in await self.reconfirmation.due(now):
            if self.pool.submit(domain.id, "reconfirmation", partial(self.reconfirmation.reconfirm, domain.id, now)):
                submitted += 1
        return submitted

    async def run_ssl(self, now=None) -> int:
        submitted = 0
        for domain in await self.certificates.due_polls(now):
            if self.pool.submit(domain.id, "SSL poll", partial(self.certificates.poll, domain.id, now)):
                submitted += 1

        await self.certificates.expire_lapsed(now)

        for domain in await self.certificates.due_renewals(now):
            if self.pool.submit(domain.id, "SSL renewal", partial(self.certificates.renew, domain.id, now)):
                submitted += 1
        return submitted

    # ── Lifecycle ────────────────────────────────────────────────────

    async def _loop(self, name: str, tick: Callable[[], Awaitable]) -> None:
        interval = self.intervals[name]
        while self._running:
            try:
                await tick()
            except Exception as e:
                logger.error(f"{name} sweep failed: {e}", exc_info=True)
            await asyncio.sleep(interval)

    def start(self) -> None:
        if self._running:
            logger.warning("Domain scheduler is already running")
            return
        self._running = True
        ticks = {
            "reservation": self.run_reservations,
            "verification": self.run_verification,
            "reconfirmation": self.run_reconfirmation,
            "ssl": self.run_ssl,
        }
        for name, tick in ticks.items():
            self._tasks.append(
                asyncio.create_task(self._loop(name, tick), name=f"domain-{name}-sweep")
            )
        logger.info("Domain scheduler started")

    async def stop(self) -> None:
        self._running = False
        for task in self._tasks:
            task.cancel()
        for task in self._tasks:
            with contextlib.suppress(asyncio.CancelledError):
                await task
        self._tasks.clear()
        await self.pool.shutdown()
        logger.info("Domain scheduler stopped")
