"""
Flow Interpreter — the pure step function at the heart of the engine.

    step(session, compiled_workflow, event) -> StepResult

The interpreter never mutates the session it is given and never performs I/O.
It works on a deep copy, walks auto-advancing nodes synchronously until it
reaches a waiting node or a dead end, and returns:
  - the updated session
  - outbound actions to hand to the messaging gateway
  - delay timers the session now waits on

Persisting the result, arming timers and sending actions is the
SessionManager's job.

Events that do not fit the session's awaiting state are no-ops: a reply for a
node the session already left, a stale timer id, a choice while waiting for
text, anything sent to a terminated session. A no-op result has
changed=False and carries the original session back.
"""
from __future__ import annotations

import structlog
from typing import Optional, Union

from config.settings import EngineConfig
from context.graph import CompiledNode, CompiledWorkflow, parse_option_handle
from core.errors import BranchResolutionError
from models.schemas import (
    AwaitingKind, AwaitingState, ChoiceSelected, FlowEvent, NodeType,
    OutboundAction, Session, SessionStart, SessionStatus, TimerFired,
    TimerRequest, UserReply,
)
from utils.conditions import evaluate_condition
from utils.templating import render

logger = structlog.get_logger()

# Termination reasons
COMPLETED = "completed"
CONDITION_BRANCH_MISSING = "condition_branch_missing"
CHOICE_RETRIES_EXHAUSTED = "choice_retries_exhausted"
STEP_LIMIT_EXCEEDED = "step_limit_exceeded"
NODE_MISSING = "node_missing"

_HALT = object()   # handler suspended or terminated the session


# ──────────────────────────────────────────────────────────────
#  Step Result
# ──────────────────────────────────────────────────────────────

class StepResult:
    """Outcome of applying one event to a session."""

    def __init__(
        self,
        session: Session,
        actions: list[OutboundAction] = None,
        timers: list[TimerRequest] = None,
        changed: bool = True,
        ignored_reason: str = "",
    ):
        self.session = session
        self.actions = actions or []
        self.timers = timers or []
        self.changed = changed
        self.ignored_reason = ignored_reason

    @property
    def terminated(self) -> bool:
        return self.session.status == SessionStatus.TERMINATED

    @property
    def reason(self) -> str:
        return self.session.termination_reason

    def __bool__(self):
        return self.changed

    def __repr__(self):
        if not self.changed:
            return f"<NoOp {self.ignored_reason}>"
        state = f"terminated:{self.reason}" if self.terminated else self.session.awaiting.kind.value
        return (f"<Step {self.session.current_node_id} [{state}] "
                f"{len(self.actions)} actions, {len(self.timers)} timers>")


class _Run:
    """Mutable scratch state for one step call."""

    def __init__(self, session: Session, workflow: CompiledWorkflow):
        self.session = session
        self.workflow = workflow
        self.actions: list[OutboundAction] = []
        self.timers: list[TimerRequest] = []

    def result(self) -> StepResult:
        return StepResult(self.session, self.actions, self.timers)


# ──────────────────────────────────────────────────────────────
#  Flow Interpreter
# ──────────────────────────────────────────────────────────────

class FlowInterpreter:
    """Applies events to sessions against compiled workflows."""

    def __init__(
        self,
        max_choice_retries: int = 3,
        reprompt_on_invalid_choice: bool = True,
        max_steps_per_event: int = 500,
    ):
        self.max_choice_retries = max_choice_retries
        self.reprompt_on_invalid_choice = reprompt_on_invalid_choice
        self.max_steps_per_event = max_steps_per_event
        self._handlers = {
            NodeType.TRIGGER: self._visit_trigger,
            NodeType.MESSAGE: self._visit_message,
            NodeType.INPUT: self._visit_input,
            NodeType.BUTTON: self._visit_choice,
            NodeType.MENU: self._visit_choice,
            NodeType.CONDITION: self._visit_condition,
            NodeType.LOOP: self._visit_loop,
            NodeType.DELAY: self._visit_delay,
        }

    @classmethod
    def from_config(cls, config: EngineConfig) -> FlowInterpreter:
        return cls(
            max_choice_retries=config.max_choice_retries,
            reprompt_on_invalid_choice=config.reprompt_on_invalid_choice,
            max_steps_per_event=config.max_steps_per_event,
        )

    # ── Entry point ───────────────────────────────────────────

    def step(self, session: Session, workflow: CompiledWorkflow, event: FlowEvent) -> StepResult:
        if not session.is_active:
            return self._ignore(session, event, "session_not_active")
        if session.workflow_id != workflow.id or session.workflow_version != workflow.version:
            return self._ignore(session, event, "workflow_mismatch")

        awaiting = session.awaiting

        if isinstance(event, SessionStart):
            if session.revision != 0 or awaiting.is_waiting:
                return self._ignore(session, event, "already_started")
            run = self._begin(session, workflow)
            self._traverse(run, run.session.current_node_id)
            return run.result()

        if isinstance(event, UserReply):
            if event.node_id is not None and event.node_id != awaiting.node_id:
                return self._ignore(session, event, "node_mismatch")
            if awaiting.kind == AwaitingKind.INPUT:
                run = self._begin(session, workflow)
                run.session.context[awaiting.variable_name] = event.text
                run.session.awaiting = AwaitingState.idle()
                self._advance_from(run, awaiting.node_id)
                return run.result()
            if awaiting.kind == AwaitingKind.CHOICE:
                return self._apply_choice(session, workflow, self._match_text(workflow, awaiting, event.text))
            return self._ignore(session, event, f"awaiting_{awaiting.kind.value}")

        if isinstance(event, ChoiceSelected):
            if awaiting.kind != AwaitingKind.CHOICE:
                return self._ignore(session, event, f"awaiting_{awaiting.kind.value}")
            if event.node_id is not None and event.node_id != awaiting.node_id:
                return self._ignore(session, event, "node_mismatch")
            return self._apply_choice(session, workflow, self._selection_index(event.selection))

        if isinstance(event, TimerFired):
            if awaiting.kind != AwaitingKind.TIMER or event.timer_id != awaiting.timer_id:
                return self._ignore(session, event, "stale_timer")
            run = self._begin(session, workflow)
            run.session.awaiting = AwaitingState.idle()
            self._advance_from(run, awaiting.node_id)
            return run.result()

        raise TypeError(f"Unsupported event type: {type(event).__name__}")

    # ── Event helpers ─────────────────────────────────────────

    @staticmethod
    def _begin(session: Session, workflow: CompiledWorkflow) -> _Run:
        s = session.model_copy(deep=True)
        s.revision += 1
        return _Run(s, workflow)

    @staticmethod
    def _ignore(session: Session, event: FlowEvent, reason: str) -> StepResult:
        logger.debug("event_ignored",
                     session_id=session.id,
                     contact_id=session.contact_id,
                     event_type=type(event).__name__,
                     reason=reason)
        return StepResult(session, changed=False, ignored_reason=reason)

    def _advance_from(self, run: _Run, node_id: str):
        cnode = run.workflow.node(node_id)
        if cnode is None:
            self._terminate(run, NODE_MISSING)
            return
        self._follow(run, cnode.next_node_id)

    @staticmethod
    def _selection_index(selection: Union[int, str]) -> Optional[int]:
        if isinstance(selection, int):
            return selection
        idx = parse_option_handle(selection)
        if idx is not None:
            return idx
        selection = selection.strip()
        return int(selection) if selection.isascii() and selection.isdecimal() else None

    @staticmethod
    def _match_text(workflow: CompiledWorkflow, awaiting: AwaitingState, text: str) -> Optional[int]:
        """Resolve free text against the awaiting choice: 1-based ordinal, handle id, or label."""
        cnode = workflow.node(awaiting.node_id)
        if cnode is None:
            return None
        options = cnode.data.options
        normalized = (text or "").strip()
        if normalized.isascii() and normalized.isdecimal():
            return int(normalized) - 1
        idx = parse_option_handle(normalized)
        if idx is not None:
            return idx
        lowered = normalized.lower()
        return next((i for i, opt in enumerate(options) if opt.strip().lower() == lowered), None)

    def _apply_choice(self, session: Session, workflow: CompiledWorkflow, index: Optional[int]) -> StepResult:
        node_id = session.awaiting.node_id
        cnode = workflow.node(node_id)
        try:
            target = self._branch_for(cnode, index)
        except BranchResolutionError as e:
            return self._invalid_choice(session, workflow, cnode, e)

        run = self._begin(session, workflow)
        run.session.awaiting = AwaitingState.idle()
        run.session.choice_retries = 0
        logger.debug("choice_resolved", session_id=session.id, node_id=node_id, option=index)
        self._traverse(run, target)
        return run.result()

    @staticmethod
    def _branch_for(cnode: Optional[CompiledNode], index: Optional[int]) -> str:
        if cnode is None or index is None or not 0 <= index < len(cnode.options):
            raise BranchResolutionError(cnode.id if cnode else "", index)
        target = cnode.options[index]
        if target is None:
            raise BranchResolutionError(cnode.id, index)
        return target

    def _invalid_choice(
        self, session: Session, workflow: CompiledWorkflow,
        cnode: Optional[CompiledNode], error: BranchResolutionError,
    ) -> StepResult:
        """Stay suspended at the choice node; re-prompt or give up after too many misses."""
        run = _Run(session.model_copy(deep=True), workflow)
        s = run.session
        s.choice_retries += 1
        logger.info("invalid_choice",
                    session_id=s.id,
                    contact_id=s.contact_id,
                    node_id=error.node_id,
                    selection=error.selection,
                    retries=s.choice_retries)

        if cnode is None or s.choice_retries > self.max_choice_retries:
            self._terminate(run, CHOICE_RETRIES_EXHAUSTED)
        elif self.reprompt_on_invalid_choice:
            self._emit_choice_prompt(run, cnode)
        return run.result()

    # ── Traversal ─────────────────────────────────────────────

    def _follow(self, run: _Run, next_node_id: Optional[str]):
        if next_node_id is None:
            self._terminate(run, COMPLETED)
        else:
            self._traverse(run, next_node_id)

    def _traverse(self, run: _Run, node_id: str):
        """Visit nodes until one suspends the session or the graph ends."""
        steps = 0
        current: Optional[str] = node_id
        while True:
            steps += 1
            if steps > self.max_steps_per_event:
                logger.warning("step_limit_exceeded",
                               session_id=run.session.id,
                               node_id=current,
                               limit=self.max_steps_per_event)
                self._terminate(run, STEP_LIMIT_EXCEEDED)
                return

            cnode = run.workflow.node(current)
            if cnode is None:
                self._terminate(run, NODE_MISSING)
                return

            run.session.current_node_id = cnode.id
            nxt = self._handlers[cnode.type](run, cnode)
            if nxt is _HALT:
                return
            if nxt is None:
                self._terminate(run, COMPLETED)
                return
            current = nxt

    def _terminate(self, run: _Run, reason: str):
        s = run.session
        s.status = SessionStatus.TERMINATED
        s.termination_reason = reason
        s.awaiting = AwaitingState.idle()
        logger.info("session_flow_ended",
                    session_id=s.id,
                    contact_id=s.contact_id,
                    workflow_id=s.workflow_id,
                    node_id=s.current_node_id,
                    reason=reason)

    # ── Node handlers ─────────────────────────────────────────

    def _emit(self, run: _Run, cnode: CompiledNode, text: str, **extra) -> OutboundAction:
        action = OutboundAction(
            contact_id=run.session.contact_id,
            session_id=run.session.id,
            node_id=cnode.id,
            rendered_text=text,
            **extra,
        )
        run.actions.append(action)
        return action

    def _render(self, run: _Run, cnode: CompiledNode, template: str) -> str:
        return render(template, run.session.context, session_id=run.session.id, node_id=cnode.id)

    def _visit_trigger(self, run: _Run, cnode: CompiledNode):
        return cnode.next_node_id

    def _visit_message(self, run: _Run, cnode: CompiledNode):
        self._emit(run, cnode, self._render(run, cnode, cnode.data.text))
        return cnode.next_node_id

    def _visit_input(self, run: _Run, cnode: CompiledNode):
        self._emit(run, cnode, self._render(run, cnode, cnode.data.question))
        run.session.awaiting = AwaitingState.for_input(cnode.id, cnode.data.variable_name)
        return _HALT

    def _emit_choice_prompt(self, run: _Run, cnode: CompiledNode):
        data = cnode.data
        if cnode.type == NodeType.MENU:
            self._emit(
                run, cnode,
                self._render(run, cnode, data.body or data.label),
                options=list(data.options),
                header=self._render(run, cnode, data.header),
                footer=self._render(run, cnode, data.footer),
                button_label=data.button_label,
            )
        else:
            self._emit(run, cnode, self._render(run, cnode, data.label), options=list(data.options))

    def _visit_choice(self, run: _Run, cnode: CompiledNode):
        self._emit_choice_prompt(run, cnode)
        run.session.awaiting = AwaitingState.for_choice(cnode.id, cnode.handles)
        run.session.choice_retries = 0
        return _HALT

    def _visit_condition(self, run: _Run, cnode: CompiledNode):
        outcome = evaluate_condition(cnode.data, run.session.context)
        target = cnode.on_true if outcome else cnode.on_false
        logger.debug("condition_evaluated",
                     session_id=run.session.id,
                     node_id=cnode.id,
                     variable=cnode.data.variable,
                     outcome=outcome)
        if target is None:
            self._terminate(run, CONDITION_BRANCH_MISSING)
            return _HALT
        return target

    def _visit_loop(self, run: _Run, cnode: CompiledNode):
        counters = run.session.loop_counters
        visits = counters.get(cnode.id, 0) + 1
        if visits <= cnode.data.count:
            counters[cnode.id] = visits
            return cnode.loop_body
        counters.pop(cnode.id, None)
        return cnode.loop_exit

    def _visit_delay(self, run: _Run, cnode: CompiledNode):
        s = run.session
        timer_id = f"{s.id}:{cnode.id}:{s.revision}"
        run.timers.append(TimerRequest(
            timer_id=timer_id,
            node_id=cnode.id,
            delay_seconds=cnode.data.seconds,
        ))
        s.awaiting = AwaitingState.for_timer(cnode.id, timer_id)
        return _HALT
