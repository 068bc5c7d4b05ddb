"""
Timer Service — durable delay and inactivity timers.

Every timer is a row in the flow store, so a delay that spans hours survives
a restart. A background poller claims due timers and hands them to the
SessionManager.

Delivery:
  pending ──claim──▶ firing (leased) ──callback ok──▶ fired
                        │
                        └── crash / callback error: lease expires, claimable again

A timer is therefore delivered at least once. The interpreter ignores a
TimerFired whose id no longer matches the session's awaiting timer, so a
second delivery has no effect and each timer takes effect exactly once.

Timer ids are deterministic:
  delay       "{session_id}:{node_id}:{revision}"  (chosen by the interpreter)
  inactivity  "inactivity:{session_id}"            (re-armed in place)
"""
from __future__ import annotations

import asyncio
import structlog
from datetime import datetime, timedelta, timezone
from typing import Awaitable, Callable, Optional

from config.settings import TimerConfig
from core.errors import TimerPersistenceFailure
from database.store_base import BaseFlowStore
from models.schemas import Session, TimerKind, TimerRecord, TimerStatus

logger = structlog.get_logger()

TimerHandler = Callable[[TimerRecord], Awaitable[None]]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def inactivity_timer_id(session_id: str) -> str:
    return f"inactivity:{session_id}"


class TimerService:
    """
    Schedules, persists and fires timers.

    Usage:
        timers = TimerService(store, handler=manager.handle_timer)
        await timers.replay()              # fire everything overdue since last run
        await timers.start_background()    # poll every poll_interval seconds
        await timers.stop()
    """

    def __init__(
        self,
        store: BaseFlowStore,
        handler: TimerHandler = None,
        clock: Callable[[], datetime] = None,
        poll_interval: float = 1.0,
        lease_seconds: int = 60,
        batch_size: int = 100,
    ):
        self.store = store
        self.handler = handler
        self.clock = clock or _utcnow
        self.poll_interval = poll_interval
        self.lease_seconds = lease_seconds
        self.batch_size = batch_size
        self._task: Optional[asyncio.Task] = None

    @classmethod
    def from_config(
        cls, store: BaseFlowStore, config: TimerConfig,
        handler: TimerHandler = None, clock: Callable[[], datetime] = None,
    ) -> TimerService:
        return cls(
            store,
            handler=handler,
            clock=clock,
            poll_interval=config.poll_interval_seconds,
            lease_seconds=config.lease_seconds,
            batch_size=config.batch_size,
        )

    # ── Scheduling ────────────────────────────────────────────

    def _due_at(self, session_id: str, timer_id: str, **delta) -> datetime:
        try:
            return self.clock() + timedelta(**delta)
        except (OverflowError, ValueError) as e:
            logger.error("timer_due_at_invalid",
                         timer_id=timer_id,
                         session_id=session_id,
                         error=str(e))
            raise TimerPersistenceFailure(session_id, timer_id, e) from e

    async def _persist(self, timer: TimerRecord) -> TimerRecord:
        try:
            await self.store.save_timer(timer)
        except Exception as e:
            logger.error("timer_persist_failed",
                         timer_id=timer.id,
                         session_id=timer.session_id,
                         error=str(e))
            raise TimerPersistenceFailure(timer.session_id, timer.id, e) from e
        logger.debug("timer_scheduled",
                     timer_id=timer.id,
                     kind=timer.kind.value,
                     session_id=timer.session_id,
                     due_at=timer.due_at.isoformat())
        return timer

    async def schedule_inactivity(self, session: Session, minutes: float) -> Optional[TimerRecord]:
        """(Re)arm the session's inactivity timeout. Zero minutes disables it."""
        if minutes <= 0:
            await self.store.cancel_timers(session.id, TimerKind.INACTIVITY)
            return None
        timer = TimerRecord(
            id=inactivity_timer_id(session.id),
            kind=TimerKind.INACTIVITY,
            session_id=session.id,
            contact_id=session.contact_id,
            due_at=self._due_at(session.id, inactivity_timer_id(session.id), minutes=minutes),
        )
        return await self._persist(timer)

    async def schedule_delay(self, session: Session, node_id: str, timer_id: str, seconds: float) -> TimerRecord:
        """Arm a one-shot delay timer for a delay node."""
        timer = TimerRecord(
            id=timer_id,
            kind=TimerKind.DELAY,
            session_id=session.id,
            contact_id=session.contact_id,
            node_id=node_id,
            due_at=self._due_at(session.id, timer_id, seconds=seconds),
        )
        return await self._persist(timer)

    async def suspend_inactivity(self, session_id: str) -> None:
        await self.store.cancel_timers(session_id, TimerKind.INACTIVITY)

    async def cancel_for_session(self, session_id: str) -> int:
        count = await self.store.cancel_timers(session_id)
        if count:
            logger.info("timers_cancelled", session_id=session_id, count=count)
        return count

    async def has_open_timer(self, timer_id: str) -> bool:
        timer = await self.store.get_timer(timer_id)
        return timer is not None and timer.status in (TimerStatus.PENDING, TimerStatus.FIRING)

    # ── Firing ────────────────────────────────────────────────

    async def fire_due(self) -> int:
        """Claim and deliver one batch of due timers. Returns how many were delivered."""
        if self.handler is None:
            raise RuntimeError("TimerService has no handler")
        now = self.clock()
        claimed = await self.store.claim_due_timers(
            now, now + timedelta(seconds=self.lease_seconds), self.batch_size,
        )
        delivered = 0
        for timer in claimed:
            try:
                await self.handler(timer)
            except Exception as e:
                # Left in firing; becomes claimable again once the lease runs out
                logger.error("timer_callback_failed",
                             timer_id=timer.id,
                             session_id=timer.session_id,
                             error=str(e),
                             exc_info=True)
                continue
            await self.store.complete_timer(timer.id)
            delivered += 1
            logger.info("timer_fired",
                        timer_id=timer.id,
                        kind=timer.kind.value,
                        session_id=timer.session_id,
                        contact_id=timer.contact_id)
        return delivered

    async def replay(self) -> int:
        """Fire every timer that fell due while the process was down."""
        total = 0
        while True:
            claimed_before = total
            total += await self.fire_due()
            if total - claimed_before < self.batch_size:
                break
        if total:
            logger.info("timers_replayed", count=total)
        return total

    # ── Background poller ─────────────────────────────────────

    async def start_background(self) -> asyncio.Task:
        self._task = asyncio.create_task(self._run())
        return self._task

    async def stop(self):
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

    async def _run(self):
        logger.info("timer_poller_started", interval=self.poll_interval)
        while True:
            try:
                await self.fire_due()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("timer_poller_error", error=str(e), exc_info=True)
            await asyncio.sleep(self.poll_interval)
