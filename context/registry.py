"""
Workflow Registry — publishing, activation and the compiled-graph cache.

Publishing parses the editor record, validates and compiles the graph, and
stores it as a new version. Only then does it become the active version.
A workflow that fails validation never reaches the active set.

Compiled graphs are cached by (workflow_id, version). Versions are
immutable once stored, so a cached graph never goes stale. Sessions started
on an older version keep running on it after a re-publish or deactivation.

Usage:
    registry = WorkflowRegistry(store)
    compiled = await registry.publish(record)            # new version, active
    active = await registry.list_active()                # for the trigger matcher
    graph = await registry.get_compiled("wf-1", 2)       # for a running session
"""
from __future__ import annotations

import structlog
from dataclasses import replace
from datetime import datetime, timezone
from typing import Any, Callable, Optional, Union

from pydantic import ValidationError

from context.graph import CompiledWorkflow, compile_workflow
from core.errors import GraphValidationError, WorkflowNotFoundError
from database.store_base import BaseFlowStore
from models.schemas import WorkflowDefinition

logger = structlog.get_logger()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _parse(record: Union[WorkflowDefinition, dict[str, Any]]) -> WorkflowDefinition:
    """Parse an editor record, turning schema errors into a GraphValidationError."""
    if isinstance(record, WorkflowDefinition):
        return record
    try:
        return WorkflowDefinition.from_record(record)
    except ValidationError as e:
        errors = [
            f"{'.'.join(str(p) for p in err['loc']) or 'workflow'}: {err['msg']}"
            for err in e.errors()
        ]
        raise GraphValidationError(str(record.get("id", "")), errors) from None


class WorkflowRegistry:
    """Owns which workflow versions are active and caches their compiled graphs."""

    def __init__(
        self,
        store: BaseFlowStore,
        clock: Callable[[], datetime] = None,
        default_timeout_minutes: Optional[int] = None,
    ):
        self._store = store
        self._clock = clock or _utcnow
        self._default_timeout = default_timeout_minutes
        self._compiled: dict[tuple[str, int], CompiledWorkflow] = {}

    # ── Publishing ────────────────────────────────────────────

    async def publish(
        self, record: Union[WorkflowDefinition, dict[str, Any]], activate: bool = True,
    ) -> CompiledWorkflow:
        """
        Validate a workflow and store it as the next version, then activate it
        unless `activate` is False.
        Raises GraphValidationError; nothing is stored in that case.
        """
        workflow = _parse(record)
        if self._default_timeout is not None and "session_timeout_minutes" not in workflow.settings.model_fields_set:
            # Records without their own timeout get the engine-wide default
            settings = workflow.settings.model_copy(update={"session_timeout_minutes": self._default_timeout})
            workflow = workflow.model_copy(update={"settings": settings})
        latest = await self._store.load(workflow.id)
        version = latest.version + 1 if latest else 1
        workflow = workflow.model_copy(update={"version": version, "is_active": False, "activated_at": None})

        compiled = compile_workflow(workflow)
        await self._store.save_workflow(workflow)
        self._compiled[(workflow.id, version)] = compiled
        logger.info("workflow_published",
                    workflow_id=workflow.id,
                    name=workflow.name,
                    version=version)

        if activate:
            return await self.activate(workflow.id, version)
        return compiled

    async def activate(self, workflow_id: str, version: Optional[int] = None) -> CompiledWorkflow:
        """Make a stored version (latest by default) the active one, re-validating it."""
        workflow = await self._store.load(workflow_id, version)
        if workflow is None:
            raise WorkflowNotFoundError(workflow_id, version)

        compiled = self._compiled.get((workflow.id, workflow.version)) or compile_workflow(workflow)
        activated_at = self._clock()
        await self._store.set_workflow_active(workflow.id, workflow.version, activated_at)

        # Rebuild the cached entry so its definition reflects the activation
        definition = workflow.model_copy(update={"is_active": True, "activated_at": activated_at})
        compiled = replace(compiled, definition=definition)
        self._compiled[(workflow.id, workflow.version)] = compiled
        logger.info("workflow_activated",
                    workflow_id=workflow.id,
                    version=workflow.version,
                    keywords=sorted(compiled.keywords))
        return compiled

    async def deactivate(self, workflow_id: str) -> None:
        """Remove a workflow from the active set. Running sessions are not touched."""
        if await self._store.load(workflow_id) is None:
            raise WorkflowNotFoundError(workflow_id)
        await self._store.set_workflow_active(workflow_id, None)
        logger.info("workflow_deactivated", workflow_id=workflow_id)

    # ── Lookup ────────────────────────────────────────────────

    async def load(self, workflow_id: str, version: Optional[int] = None) -> WorkflowDefinition:
        workflow = await self._store.load(workflow_id, version)
        if workflow is None:
            raise WorkflowNotFoundError(workflow_id, version)
        return workflow

    async def get_compiled(self, workflow_id: str, version: int) -> CompiledWorkflow:
        """Compiled graph of an exact version, active or not."""
        cached = self._compiled.get((workflow_id, version))
        if cached is not None:
            return cached
        workflow = await self.load(workflow_id, version)
        compiled = compile_workflow(workflow)
        self._compiled[(workflow_id, version)] = compiled
        return compiled

    async def list_active(self) -> list[CompiledWorkflow]:
        result = []
        for workflow in await self._store.list_active():
            compiled = await self.get_compiled(workflow.id, workflow.version)
            result.append(replace(compiled, definition=workflow))
        return result

    async def list_workflows(self) -> list[WorkflowDefinition]:
        return await self._store.list_workflows()

    def clear_cache(self):
        self._compiled.clear()

