"""
Trigger Matcher — maps inbound free text to a workflow entry point.

Only consulted when the contact has no active session. A contact with an
active session never starts a new one from text; its text is a reply to
whatever the session is waiting for.

Matching is whole-message and case/whitespace-insensitive. When several
active workflows share a keyword, the most recently activated one wins.
"""
from __future__ import annotations

import structlog
from datetime import datetime, timezone
from typing import Optional

from context.graph import CompiledWorkflow
from context.registry import WorkflowRegistry

logger = structlog.get_logger()

_EPOCH = datetime.min.replace(tzinfo=timezone.utc)


def normalize(text: Optional[str]) -> str:
    return (text or "").strip().lower()


def _recency(workflow: CompiledWorkflow) -> datetime:
    return workflow.definition.activated_at or _EPOCH


def match(
    text: Optional[str],
    workflows: list[CompiledWorkflow],
    has_active_session: bool = False,
) -> Optional[CompiledWorkflow]:
    """Pick the workflow whose keyword set contains the normalized text."""
    if has_active_session:
        return None
    normalized = normalize(text)
    if not normalized:
        return None
    for workflow in sorted(workflows, key=_recency, reverse=True):
        if normalized in workflow.keywords:
            return workflow
    return None


class TriggerMatcher:
    """Resolves inbound text against the registry's active workflows."""

    def __init__(self, registry: WorkflowRegistry):
        self._registry = registry

    async def find(self, text: Optional[str], contact_id: str = "") -> Optional[CompiledWorkflow]:
        workflows = await self._registry.list_active()
        workflow = match(text, workflows)
        if workflow is None:
            logger.debug("trigger_no_match",
                         contact_id=contact_id,
                         text=normalize(text)[:64],
                         candidates=len(workflows))
        else:
            logger.info("trigger_matched",
                        contact_id=contact_id,
                        workflow_id=workflow.id,
                        version=workflow.version)
        return workflow
