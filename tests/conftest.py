"""Shared test fixtures for the flow engine."""
import pytest
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from channels.recording import RecordingGateway
from config.settings import EngineConfig
from context.graph import CompiledWorkflow, compile_workflow
from context.registry import WorkflowRegistry
from core.interpreter import FlowInterpreter
from core.session_manager import SessionManager
from database.store_memory import InMemoryFlowStore
from job_queue.timer_service import TimerService
from models.schemas import Session, WorkflowDefinition


class FakeClock:
    """Settable clock shared by the manager, registry and timer service."""

    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


def node(node_id: str, node_type: str, **data) -> dict[str, Any]:
    return {"id": node_id, "type": node_type, "data": data}


def edge(source: str, target: str, handle: Optional[str] = None) -> dict[str, Any]:
    return {
        "id": f"e-{source}-{target}-{handle or 'out'}",
        "source": source,
        "target": target,
        "sourceHandle": handle,
    }


def record(
    workflow_id: str,
    nodes: list[dict],
    edges: list[dict],
    keywords: str = "hi",
    **extra,
) -> dict[str, Any]:
    """An editor-shaped workflow record."""
    return {
        "id": workflow_id,
        "name": workflow_id.replace("-", " ").title(),
        "nodes": nodes,
        "edges": edges,
        "triggerKeyword": keywords,
        "isActive": True,
        **extra,
    }


# ──────────────────────────────────────────────────────────────
#  Workflow records
# ──────────────────────────────────────────────────────────────

@pytest.fixture
def greeting_record():
    """trigger → ask name → greet."""
    return record(
        "greeting",
        nodes=[
            node("t", "trigger"),
            node("ask", "input", question="What's your name?", variable_name="name"),
            node("hello", "message", text="Hello {{name}}"),
        ],
        edges=[edge("t", "ask"), edge("ask", "hello")],
    )


@pytest.fixture
def menu_record():
    """trigger → button [Sales, Support] → one message per option."""
    return record(
        "menu",
        nodes=[
            node("t", "trigger"),
            node("pick", "button", label="How can we help?", options=["Sales", "Support"]),
            node("x", "message", text="X"),
            node("y", "message", text="Y"),
        ],
        edges=[
            edge("t", "pick"),
            edge("pick", "x", "option-0"),
            edge("pick", "y", "option-1"),
        ],
        keywords="menu",
    )


@pytest.fixture
def age_record():
    """trigger → ask age → age > 18 ? adult : minor."""
    return record(
        "age-check",
        nodes=[
            node("t", "trigger"),
            node("ask", "input", question="How old are you?", variable_name="age"),
            node("check", "condition", variable="age", operator="gt", value="18"),
            node("adult", "message", text="adult"),
            node("minor", "message", text="minor"),
        ],
        edges=[
            edge("t", "ask"),
            edge("ask", "check"),
            edge("check", "adult", "true"),
            edge("check", "minor", "false"),
        ],
        keywords="age",
    )


@pytest.fixture
def loop_record():
    """trigger → loop(3) → tick → loop … exit → done."""
    return record(
        "loop",
        nodes=[
            node("t", "trigger"),
            node("repeat", "loop", count=3),
            node("tick", "message", text="tick"),
            node("done", "message", text="done"),
        ],
        edges=[
            edge("t", "repeat"),
            edge("repeat", "tick"),
            edge("repeat", "done"),
            edge("tick", "repeat"),
        ],
        keywords="loop",
    )


@pytest.fixture
def delay_record():
    """trigger → message → delay 10 min → message."""
    return record(
        "delay",
        nodes=[
            node("t", "trigger"),
            node("before", "message", text="Please wait"),
            node("pause", "delay", duration=10, unit="min"),
            node("after", "message", text="Thanks for waiting"),
        ],
        edges=[edge("t", "before"), edge("before", "pause"), edge("pause", "after")],
        keywords="wait",
    )


@pytest.fixture
def compile_record():
    def _compile(raw: dict[str, Any]) -> CompiledWorkflow:
        return compile_workflow(WorkflowDefinition.from_record(raw))
    return _compile


@pytest.fixture
def new_session():
    def _new(compiled: CompiledWorkflow, contact_id: str = "c1") -> Session:
        return Session(
            contact_id=contact_id,
            workflow_id=compiled.id,
            workflow_version=compiled.version,
            current_node_id=compiled.trigger_node_id,
        )
    return _new


# ──────────────────────────────────────────────────────────────
#  Engine components
# ──────────────────────────────────────────────────────────────

@pytest.fixture
def clock():
    return FakeClock(datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc))


@pytest.fixture
def interpreter():
    return FlowInterpreter(max_choice_retries=2)


@pytest.fixture
def store():
    return InMemoryFlowStore()


@pytest.fixture
def registry(store, clock):
    return WorkflowRegistry(store, clock=clock)


@pytest.fixture
def gateway():
    return RecordingGateway()


@pytest.fixture
def timers(store, clock):
    return TimerService(store, clock=clock)


@pytest.fixture
def manager(store, registry, timers, gateway, clock):
    return SessionManager(
        store,
        registry,
        timers=timers,
        gateway=gateway,
        config=EngineConfig(max_choice_retries=2),
        clock=clock,
    )
