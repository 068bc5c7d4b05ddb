"""
Error taxonomy for the flow engine.

Only GraphValidationError ever reaches a publishing caller. Everything raised
while processing a contact's event is caught at the SessionManager boundary
and isolated to that contact.
"""
from __future__ import annotations

from typing import Optional


class FlowEngineError(Exception):
    """Base class for all flow engine errors."""


class GraphValidationError(FlowEngineError):
    """A workflow graph is malformed; activation is refused."""

    def __init__(self, workflow_id: str, errors: list[str]):
        self.workflow_id = workflow_id
        self.errors = list(errors)
        super().__init__(f"Invalid workflow '{workflow_id}': {'; '.join(self.errors)}")


class TemplateRenderWarning(UserWarning):
    """A template referenced a variable with no binding; it rendered as empty."""


class BranchResolutionError(FlowEngineError):
    """A choice did not resolve to any outgoing edge of the awaiting node."""

    def __init__(self, node_id: str, selection: object):
        self.node_id = node_id
        self.selection = selection
        super().__init__(f"Selection {selection!r} matches no branch of node '{node_id}'")


class TimerPersistenceFailure(FlowEngineError):
    """A durable timer could not be stored; the owning session is stalled."""

    def __init__(self, session_id: str, timer_id: str, cause: Optional[BaseException] = None):
        self.session_id = session_id
        self.timer_id = timer_id
        self.cause = cause
        super().__init__(f"Could not persist timer '{timer_id}' for session '{session_id}': {cause}")


class SessionNotFoundError(FlowEngineError):
    def __init__(self, contact_id: str):
        self.contact_id = contact_id
        super().__init__(f"No active session for contact '{contact_id}'")


class SessionConflictError(FlowEngineError):
    def __init__(self, contact_id: str, session_id: str):
        self.contact_id = contact_id
        self.session_id = session_id
        super().__init__(f"Contact '{contact_id}' already has active session '{session_id}'")


class WorkflowNotFoundError(FlowEngineError):
    def __init__(self, workflow_id: str, version: Optional[int] = None):
        self.workflow_id = workflow_id
        self.version = version
        label = workflow_id if version is None else f"{workflow_id}@v{version}"
        super().__init__(f"Workflow '{label}' not found or not active")
