"""
Session Manager — owns the session lifecycle around the pure interpreter.

For every event it:
  1. takes the contact's lock (one event per contact at a time)
  2. loads the active session and its compiled workflow version
  3. drops duplicate inbound message ids
  4. runs FlowInterpreter.step
  5. commits the new session state and emitted actions in one store call
  6. arms delay timers (a failure stalls the session)
  7. re-arms or suspends the inactivity timeout
  8. hands the actions to the messaging gateway and records the outcome

A failed send never touches session state: the session's position in the
graph stays authoritative and the failure is visible in the outbox.

Session ends:
  completed / condition_branch_missing / choice_retries_exhausted /
  step_limit_exceeded   — decided by the interpreter
  inactivity_timeout    — the inactivity timer fired and nothing happened since
  reset                 — operator or user reset
"""
from __future__ import annotations

import asyncio
import structlog
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional, Union

from channels.base import MessagingGateway, StatusUpdate
from config.settings import EngineConfig
from context.graph import CompiledWorkflow
from context.registry import WorkflowRegistry
from context.trigger_matcher import TriggerMatcher
from core.errors import SessionConflictError, SessionNotFoundError, TimerPersistenceFailure
from core.interpreter import FlowInterpreter, StepResult
from database.store_base import BaseFlowStore
from job_queue.timer_service import TimerService, inactivity_timer_id
from models.schemas import (
    AwaitingKind, AwaitingState, ChoiceSelected, DeliveryStatus, FlowEvent,
    InboundMessage, OutboundAction, Session, SessionStart, SessionStatus,
    TimerFired, TimerKind, TimerRecord, UserReply,
)

logger = structlog.get_logger()

INACTIVITY_TIMEOUT = "inactivity_timeout"
RESET = "reset"
TIMER_LOST = "timer_lost"
TIMER_PERSISTENCE_FAILED = "timer_persistence_failed"

# Ended sessions checked for a redelivered trigger message
ENDED_SESSION_LOOKBACK = 5

# Delivery reports can arrive out of order; never move a status backwards
_DELIVERY_RANK = {
    DeliveryStatus.PENDING: 0,
    DeliveryStatus.SENT: 1,
    DeliveryStatus.DELIVERED: 2,
    DeliveryStatus.READ: 3,
    DeliveryStatus.FAILED: 4,
}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class KeyedLock:
    """One asyncio.Lock per key, dropped again once nobody holds or waits on it."""

    def __init__(self):
        self._locks: dict[str, asyncio.Lock] = {}
        self._users: dict[str, int] = {}

    @asynccontextmanager
    async def hold(self, key: str):
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._users[key] = self._users.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._users[key] -= 1
            if not self._users[key]:
                del self._users[key]
                self._locks.pop(key, None)

    def locked(self, key: str) -> bool:
        lock = self._locks.get(key)
        return lock is not None and lock.locked()

    def __len__(self):
        return len(self._locks)


class SessionManager:
    """
    Creates, advances and ends sessions.

    Usage:
        manager = SessionManager(store, registry, gateway=gateway)
        await manager.start()                                   # reconcile + replay
        await manager.handle_inbound("15551234567", "hi", "wamid.1")
        await manager.stop()
    """

    def __init__(
        self,
        store: BaseFlowStore,
        registry: WorkflowRegistry,
        interpreter: FlowInterpreter = None,
        timers: TimerService = None,
        gateway: MessagingGateway = None,
        matcher: TriggerMatcher = None,
        config: EngineConfig = None,
        clock: Callable[[], datetime] = None,
    ):
        self.config = config or EngineConfig()
        self.store = store
        self.registry = registry
        self.interpreter = interpreter or FlowInterpreter.from_config(self.config)
        self.clock = clock or _utcnow
        self.timers = timers or TimerService(store, clock=self.clock)
        if self.timers.handler is None:
            self.timers.handler = self.handle_timer
        self.gateway = gateway
        self.matcher = matcher or TriggerMatcher(registry)
        self._locks = KeyedLock()

    # ── Lifecycle ─────────────────────────────────────────────

    async def start(self, background: bool = True):
        """Recover after a restart, then begin polling timers."""
        stalled = await self.reconcile()
        flushed = await self.flush_outbox()
        replayed = await self.timers.replay()
        if background:
            await self.timers.start_background()
        logger.info("session_manager_started",
                    stalled=stalled,
                    outbox_flushed=flushed,
                    timers_replayed=replayed)

    async def stop(self):
        await self.timers.stop()
        logger.info("session_manager_stopped")

    # ── Public API ────────────────────────────────────────────

    async def get_active_session(self, contact_id: str) -> Optional[Session]:
        return await self.store.get_active_session(contact_id)

    async def create_session(
        self, contact_id: str, workflow_id: str, version: Optional[int] = None,
    ) -> StepResult:
        """
        Start a workflow for a contact outside the trigger path.
        Raises SessionConflictError if the contact already has an active session.
        """
        if version is None:
            version = (await self.registry.load(workflow_id)).version
        workflow = await self.registry.get_compiled(workflow_id, version)
        async with self._locks.hold(contact_id):
            return await self._start(contact_id, workflow)

    async def advance(self, contact_id: str, event: FlowEvent) -> StepResult:
        """Apply one event to the contact's active session."""
        async with self._locks.hold(contact_id):
            session = await self.store.get_active_session(contact_id)
            if session is None:
                raise SessionNotFoundError(contact_id)
            return await self._advance_session(session, event)

    async def handle_inbound(
        self, contact_id: str, text: str, message_id: Optional[str] = None,
    ) -> Optional[StepResult]:
        """
        Free text from a contact: a reply to the active session, or a
        candidate trigger keyword when there is none.

        The gateway delivers at least once. A redelivered message id is
        dropped if it is among the last `recent_message_window` ids of the
        active session, or of one of the contact's latest ended sessions
        (so a repeated trigger does not restart a finished flow). Older
        ids fall out of that window and are processed again.
        """
        async with self._locks.hold(contact_id):
            session = await self.store.get_active_session(contact_id)
            if session is not None:
                return await self._advance_session(session, UserReply(text=text, message_id=message_id))

            if await self._seen_by_ended_session(contact_id, message_id):
                return None
            workflow = await self.matcher.find(text, contact_id)
            if workflow is None:
                return None
            return await self._start(contact_id, workflow, message_id)

    async def handle_selection(
        self, contact_id: str, selection: Union[int, str], message_id: Optional[str] = None,
    ) -> Optional[StepResult]:
        """A button or list tap. Ignored when the contact has no active session."""
        async with self._locks.hold(contact_id):
            session = await self.store.get_active_session(contact_id)
            if session is None:
                logger.debug("selection_without_session", contact_id=contact_id, selection=selection)
                return None
            return await self._advance_session(
                session, ChoiceSelected(selection=selection, message_id=message_id),
            )

    async def handle_message(self, message: InboundMessage) -> Optional[StepResult]:
        """Dispatcher entry point. A fault here is logged and stays with this contact."""
        try:
            if message.is_selection:
                return await self.handle_selection(message.contact_id, message.selection, message.message_id)
            return await self.handle_inbound(message.contact_id, message.text or "", message.message_id)
        except Exception as e:
            logger.error("inbound_processing_failed",
                         contact_id=message.contact_id,
                         message_id=message.message_id,
                         error=str(e),
                         exc_info=True)
            return None

    async def reset(self, contact_id: str) -> Session:
        """
        End the contact's session unconditionally, suspended or not.
        A stalled session is cleared too when there is no active one.
        """
        async with self._locks.hold(contact_id):
            session = await self.store.get_active_session(contact_id)
            if session is None:
                stalled = await self.store.list_sessions(status=SessionStatus.STALLED, contact_id=contact_id)
                session = stalled[-1] if stalled else None
            if session is None:
                raise SessionNotFoundError(contact_id)
            return await self._terminate(session, RESET)

    # ── Timers ────────────────────────────────────────────────

    async def handle_timer(self, timer: TimerRecord) -> None:
        """
        TimerService callback. Exceptions propagate so the timer stays
        leased and is delivered again.
        """
        async with self._locks.hold(timer.contact_id):
            session = await self.store.get_session(timer.session_id)
            if session is None or not session.is_active:
                logger.debug("timer_for_inactive_session", timer_id=timer.id, session_id=timer.session_id)
                return

            if timer.kind == TimerKind.DELAY:
                await self._advance_session(session, TimerFired(timer_id=timer.id))
                return

            await self._check_inactivity(session)

    async def _check_inactivity(self, session: Session):
        if session.awaiting.kind == AwaitingKind.TIMER:
            return
        workflow = await self.registry.get_compiled(session.workflow_id, session.workflow_version)
        deadline = self._inactivity_deadline(session, workflow)
        if deadline is None:
            return

        now = self.clock()
        if now < deadline:
            # Activity since the timer was armed; push it out instead of ending
            await self.timers.schedule_inactivity(session, (deadline - now).total_seconds() / 60)
            return
        await self._terminate(session, INACTIVITY_TIMEOUT)

    @staticmethod
    def _inactivity_deadline(session: Session, workflow: CompiledWorkflow) -> Optional[datetime]:
        minutes = workflow.settings.session_timeout_minutes
        if minutes <= 0:
            return None
        anchor = session.last_activity_at if workflow.settings.reset_on_inactivity else session.created_at
        return anchor + timedelta(minutes=minutes)

    async def _arm_inactivity(self, session: Session, workflow: CompiledWorkflow, fresh: bool = False):
        if session.awaiting.kind == AwaitingKind.TIMER:
            await self.timers.suspend_inactivity(session.id)
            return

        deadline = self._inactivity_deadline(session, workflow)
        if deadline is None:
            await self.timers.schedule_inactivity(session, 0)
            return
        if not (fresh or workflow.settings.reset_on_inactivity):
            # Fixed lifetime: only re-arm when the timer was suspended by a delay
            if await self.timers.has_open_timer(inactivity_timer_id(session.id)):
                return
        remaining = (deadline - self.clock()).total_seconds() / 60
        if remaining <= 0:
            await self._terminate(session, INACTIVITY_TIMEOUT)
            return
        await self.timers.schedule_inactivity(session, remaining)

    # ── Delivery reports ──────────────────────────────────────

    async def report_delivery(
        self, action_id: str, status: DeliveryStatus,
        error: str = "", channel_message_id: str = "",
    ) -> Optional[OutboundAction]:
        """Record a gateway delivery outcome on the outbox. Session state is not touched."""
        action = await self.store.get_action(action_id)
        if action is None:
            logger.warning("delivery_report_unknown_action", action_id=action_id)
            return None
        if _DELIVERY_RANK[status] < _DELIVERY_RANK[action.delivery_status]:
            return action

        await self.store.update_action_delivery(action_id, status, error, channel_message_id)
        if status == DeliveryStatus.FAILED:
            logger.warning("outbound_delivery_failed",
                           action_id=action_id,
                           contact_id=action.contact_id,
                           session_id=action.session_id,
                           node_id=action.node_id,
                           error=error)
        return await self.store.get_action(action_id)

    async def report_status(self, update: StatusUpdate) -> Optional[OutboundAction]:
        """A provider status webhook, matched to the outbox by channel message id."""
        action = await self.store.find_action_by_channel_message_id(update.channel_message_id)
        if action is None:
            logger.debug("status_for_unknown_message", channel_message_id=update.channel_message_id)
            return None
        return await self.report_delivery(action.id, update.status, update.error)

    # ── Recovery ──────────────────────────────────────────────

    async def reconcile(self) -> int:
        """
        Check active sessions against the timer table after a restart.
        A session waiting on a timer that was never persisted is stalled; a
        missing inactivity timer is re-armed. Returns how many were stalled.
        """
        stalled = 0
        for session in await self.store.list_sessions(status=SessionStatus.ACTIVE):
            async with self._locks.hold(session.contact_id):
                awaiting = session.awaiting
                if awaiting.kind == AwaitingKind.TIMER:
                    if not await self.timers.has_open_timer(awaiting.timer_id):
                        await self._stall(session, TIMER_LOST)
                        stalled += 1
                    continue
                if not await self.timers.has_open_timer(inactivity_timer_id(session.id)):
                    workflow = await self.registry.get_compiled(session.workflow_id, session.workflow_version)
                    await self._arm_inactivity(session, workflow, fresh=True)
        if stalled:
            logger.warning("sessions_stalled_on_startup", count=stalled)
        return stalled

    async def flush_outbox(self, limit: int = 500) -> int:
        """Send actions committed before a crash but never handed to the gateway."""
        if self.gateway is None:
            return 0
        pending = await self.store.list_actions(status=DeliveryStatus.PENDING, limit=limit)
        await self._dispatch(pending)
        return len(pending)

    async def list_stalled(self) -> list[Session]:
        return await self.store.list_sessions(status=SessionStatus.STALLED)

    async def list_failed_deliveries(self, limit: int = 100) -> list[OutboundAction]:
        return await self.store.list_actions(status=DeliveryStatus.FAILED, limit=limit)

    # ── Internals (caller holds the contact lock) ─────────────

    async def _start(
        self, contact_id: str, workflow: CompiledWorkflow, message_id: Optional[str] = None,
    ) -> StepResult:
        existing = await self.store.get_active_session(contact_id)
        if existing is not None:
            raise SessionConflictError(contact_id, existing.id)

        now = self.clock()
        session = Session(
            contact_id=contact_id,
            workflow_id=workflow.id,
            workflow_version=workflow.version,
            current_node_id=workflow.trigger_node_id,
            last_activity_at=now,
            created_at=now,
        )
        await self.store.create_session(session)
        logger.info("session_created",
                    session_id=session.id,
                    contact_id=contact_id,
                    workflow_id=workflow.id,
                    version=workflow.version)

        result = self.interpreter.step(session, workflow, SessionStart())
        return await self._commit(workflow, result, message_id, fresh=True)

    async def _seen_by_ended_session(self, contact_id: str, message_id: Optional[str]) -> bool:
        if not message_id:
            return False
        recent = (await self.store.list_sessions(contact_id=contact_id))[-ENDED_SESSION_LOOKBACK:]
        for session in recent:
            if session.has_seen_message(message_id):
                logger.info("duplicate_inbound_dropped",
                            session_id=session.id,
                            contact_id=contact_id,
                            message_id=message_id)
                return True
        return False

    async def _advance_session(self, session: Session, event: FlowEvent) -> StepResult:
        message_id = getattr(event, "message_id", None)
        if session.has_seen_message(message_id):
            logger.info("duplicate_inbound_dropped",
                        session_id=session.id,
                        contact_id=session.contact_id,
                        message_id=message_id)
            return StepResult(session, changed=False, ignored_reason="duplicate_message")

        workflow = await self.registry.get_compiled(session.workflow_id, session.workflow_version)
        result = self.interpreter.step(session, workflow, event)
        if not result.changed:
            return result
        return await self._commit(workflow, result, message_id)

    async def _commit(
        self, workflow: CompiledWorkflow, result: StepResult,
        message_id: Optional[str] = None, fresh: bool = False,
    ) -> StepResult:
        s = result.session
        now = self.clock()
        s.remember_message(message_id, limit=self.config.recent_message_window)
        s.last_activity_at = now
        if result.terminated:
            s.ended_at = now

        await self.store.commit_step(s, result.actions)
        logger.debug("session_step_committed",
                     session_id=s.id,
                     contact_id=s.contact_id,
                     node_id=s.current_node_id,
                     revision=s.revision,
                     actions=len(result.actions))

        if result.terminated:
            await self.timers.cancel_for_session(s.id)
        else:
            try:
                for request in result.timers:
                    await self.timers.schedule_delay(s, request.node_id, request.timer_id, request.delay_seconds)
                await self._arm_inactivity(s, workflow, fresh=fresh)
            except TimerPersistenceFailure:
                await self._stall(s, TIMER_PERSISTENCE_FAILED)

        await self._dispatch(result.actions)
        return result

    async def _dispatch(self, actions: list[OutboundAction]):
        if self.gateway is None:
            return
        for action in actions:
            try:
                delivery = await self.gateway.send(action.contact_id, action.to_content())
                await self.report_delivery(action.id, delivery.status, delivery.error, delivery.channel_message_id)
            except Exception as e:
                logger.error("outbox_dispatch_failed",
                             action_id=action.id,
                             contact_id=action.contact_id,
                             error=str(e),
                             exc_info=True)

    async def _terminate(self, session: Session, reason: str) -> Session:
        s = session.model_copy(deep=True)
        s.status = SessionStatus.TERMINATED
        s.termination_reason = reason
        s.awaiting = AwaitingState.idle()
        s.ended_at = self.clock()
        s.revision += 1
        await self.store.save_session(s)
        await self.timers.cancel_for_session(s.id)
        logger.info("session_terminated",
                    session_id=s.id,
                    contact_id=s.contact_id,
                    workflow_id=s.workflow_id,
                    node_id=s.current_node_id,
                    reason=reason)
        return s

    async def _stall(self, session: Session, reason: str):
        session.status = SessionStatus.STALLED
        session.termination_reason = reason
        await self.store.save_session(session)
        await self.timers.cancel_for_session(session.id)
        logger.error("session_stalled",
                     session_id=session.id,
                     contact_id=session.contact_id,
                     workflow_id=session.workflow_id,
                     node_id=session.current_node_id,
                     reason=reason)
