"""Process-wide scan scheduler: periodic ticks plus on-demand scan requests."""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager, suppress
from dataclasses import dataclass
from datetime import timedelta
from enum import StrEnum
from typing import TYPE_CHECKING

from sqlalchemy import select

from filecatalog.models.backend import Backend
from filecatalog.scanner.runner import run_scan
from filecatalog.services.datetime_service import now_utc

if TYPE_CHECKING:
    from collections.abc import AsyncGenerator, Awaitable, Callable
    from datetime import datetime

    import httpx
    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

    from filecatalog.config import Settings
    from filecatalog.scanner.reconciler import ReconcileOutcome

logger = logging.getLogger(__name__)


class ScanState(StrEnum):
    """Scan state of one backend."""

    IDLE = "idle"
    SCANNING = "scanning"


def is_due(backend: Backend, now: datetime) -> bool:
    """Whether the periodic schedule wants ``backend`` rescanned at ``now``.

    Backends without an interval are scanned only on demand.
    """
    interval = backend.rescan_interval_minutes
    if interval is None:
        return False
    if backend.last_scanned_at is None:
        return True
    return now - backend.last_scanned_at >= timedelta(minutes=interval)


@dataclass
class Compaction:
    """Id renumbering done inside an exclusive section.

    The holder sets ``removed_id`` once a backend is actually deleted; every
    id above it then moved down by one.
    """

    removed_id: int | None = None

    def remap(self, backend_id: int) -> int | None:
        """Id ``backend_id`` carries after the compaction; None if it was deleted."""
        if self.removed_id is None or backend_id < self.removed_id:
            return backend_id
        if backend_id == self.removed_id:
            return None
        return backend_id - 1


class ScanScheduler:
    """Owns the in-flight scan of every backend.

    A backend is Scanning exactly while it has a task in ``_in_flight``. The
    check and the registration in ``request_scan`` are synchronous, with no
    await between them, so under asyncio's cooperative model two requests can
    never both start a pass for the same backend. Do NOT call from other OS
    threads.

    Passes of different backends run in parallel, at most
    ``scan_max_concurrency`` at a time.

    Args:
        session_factory: Session factory of the index database.
        settings: Application settings (tick cadence, limits, secret key).
        transport: Optional httpx transport handed to every walk.
        scan_func: Replaces the default ``run_scan`` pass (tests).
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        settings: Settings,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
        scan_func: Callable[[int], Awaitable[ReconcileOutcome]] | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._settings = settings
        self._transport = transport
        self._scan_func = scan_func
        self._in_flight: dict[int, asyncio.Task[ReconcileOutcome | None]] = {}
        self._semaphore = asyncio.Semaphore(settings.scan_max_concurrency)
        self._timer: asyncio.Task[None] | None = None
        # Serializes registry writes with id compaction.
        self._registry_lock = asyncio.Lock()
        self._paused = False
        # Requests made while paused, in pre-compaction ids.
        self._deferred: set[int] = set()
        self._stopping = False
        # Bumped whenever backend ids may have been renumbered.
        self._generation = 0

    @property
    def is_running(self) -> bool:
        """Whether the periodic loop is active."""
        return self._timer is not None and not self._timer.done()

    @property
    def scanning(self) -> frozenset[int]:
        """Ids of backends with a pass in flight."""
        return frozenset(self._in_flight)

    def state(self, backend_id: int) -> ScanState:
        """Current scan state of a backend."""
        return ScanState.SCANNING if backend_id in self._in_flight else ScanState.IDLE

    async def _scan(self, backend_id: int) -> ReconcileOutcome:
        if self._scan_func is not None:
            return await self._scan_func(backend_id)
        return await run_scan(
            self._session_factory, backend_id, self._settings, transport=self._transport
        )

    async def _run(self, backend_id: int) -> ReconcileOutcome | None:
        try:
            async with self._semaphore:
                return await self._scan(backend_id)
        except LookupError:
            logger.info("Backend %d vanished before its scan ran", backend_id)
            return None
        except Exception:
            # Task boundary: nobody awaits fire-and-forget scans.
            logger.exception("Scan of backend %d crashed", backend_id)
            return None
        finally:
            if self._in_flight.get(backend_id) is asyncio.current_task():
                del self._in_flight[backend_id]

    def request_scan(self, backend_id: int) -> asyncio.Task[ReconcileOutcome | None] | None:
        """Start a pass for ``backend_id`` unless one is already running.

        Returns the running task when the request was coalesced into an
        in-flight pass, the new task otherwise, or None when no pass starts
        now. During id compaction the request is deferred and dispatched,
        under its new id, when the exclusive section ends; after ``stop`` it
        is dropped.
        """
        existing = self._in_flight.get(backend_id)
        if existing is not None:
            logger.debug("Backend %d already scanning; request coalesced", backend_id)
            return existing
        if self._stopping:
            logger.info("Scan request for backend %d dropped: scheduler stopping", backend_id)
            return None
        if self._paused:
            logger.info("Scan request for backend %d deferred: ids being compacted", backend_id)
            self._deferred.add(backend_id)
            return None
        task = asyncio.create_task(self._run(backend_id), name=f"scan-backend-{backend_id}")
        self._in_flight[backend_id] = task
        return task

    async def _load_backends(self) -> list[Backend]:
        async with self._session_factory() as session:
            result = await session.execute(select(Backend).order_by(Backend.id))
            return list(result.scalars().all())

    async def request_all(self) -> tuple[list[int], list[int]]:
        """Request a pass for every backend regardless of due-ness.

        Returns (queued, already_running) backend ids.
        """
        generation = self._generation
        backends = await self._load_backends()
        if generation != self._generation:
            return [], []
        queued: list[int] = []
        already_running: list[int] = []
        for backend in backends:
            was_scanning = backend.id in self._in_flight
            task = self.request_scan(backend.id)
            if task is None and self._stopping:
                continue
            (already_running if task is not None and was_scanning else queued).append(backend.id)
        return queued, already_running

    async def tick(self, now: datetime | None = None) -> list[int]:
        """Start a pass for every due backend that is not already scanning.

        Returns the ids of backends a pass was started for.
        """
        generation = self._generation
        backends = await self._load_backends()
        if generation != self._generation:
            # Ids were renumbered while loading; this snapshot is unusable.
            return []
        when = now if now is not None else now_utc()
        started: list[int] = []
        for backend in backends:
            if backend.id in self._in_flight or not is_due(backend, when):
                continue
            if self.request_scan(backend.id) is not None:
                started.append(backend.id)
        if started:
            logger.info("Scheduled scans for backends %s", started)
        return started

    async def _loop(self) -> None:
        loop = asyncio.get_running_loop()
        interval = self._settings.scan_tick_seconds
        next_at = loop.time()
        if not self._settings.scan_on_startup:
            next_at += interval
        while True:
            delay = next_at - loop.time()
            if delay > 0:
                await asyncio.sleep(delay)
            try:
                await self.tick()
            except Exception:
                logger.exception("Scheduler tick failed")
            next_at += interval
            # Skip ticks missed while a slow tick ran instead of bursting.
            now = loop.time()
            if next_at < now:
                next_at = now

    async def start(self) -> None:
        """Start the periodic loop. Idempotent."""
        if self.is_running:
            return
        self._stopping = False
        self._timer = asyncio.create_task(self._loop(), name="scan-scheduler")
        logger.info(
            "Scan scheduler started (tick=%ss, concurrency=%d)",
            self._settings.scan_tick_seconds,
            self._settings.scan_max_concurrency,
        )

    async def wait_idle(self, backend_id: int | None = None) -> None:
        """Wait until ``backend_id`` (or every backend) has no pass in flight."""
        if backend_id is not None:
            task = self._in_flight.get(backend_id)
            tasks = [task] if task is not None else []
        else:
            tasks = list(self._in_flight.values())
        if tasks:
            await asyncio.wait(tasks)

    async def stop(self) -> None:
        """Stop ticking and let in-flight passes drain. Idempotent."""
        self._stopping = True
        if self._timer is not None:
            self._timer.cancel()
            with suppress(asyncio.CancelledError):
                await self._timer
            self._timer = None
        await self.wait_idle()
        logger.info("Scan scheduler stopped")

    @asynccontextmanager
    async def registry_write(self) -> AsyncGenerator[None]:
        """Serialize a backend create or update with id compaction.

        Inside, no backend id can change between reading a row and writing it.
        """
        async with self._registry_lock:
            yield

    def _dispatch_deferred(self, compaction: Compaction) -> None:
        deferred, self._deferred = self._deferred, set()
        for old_id in sorted(deferred):
            backend_id = compaction.remap(old_id)
            if backend_id is None:
                logger.info("Deferred scan of backend %d dropped: backend deleted", old_id)
                continue
            self.request_scan(backend_id)

    @asynccontextmanager
    async def exclusive(self) -> AsyncGenerator[Compaction]:
        """Hold off all scans and registry writes while backend ids are renumbered.

        In-flight passes are drained before the body runs, so no pass can
        write to a repurposed id. Requests made while held are deferred; on
        exit they are remapped through the yielded ``Compaction`` and
        dispatched.
        """
        async with self._registry_lock:
            self._paused = True
            compaction = Compaction()
            try:
                await self.wait_idle()
                yield compaction
            finally:
                self._paused = False
                self._generation += 1
                self._dispatch_deferred(compaction)
