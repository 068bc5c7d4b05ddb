"""
Workflow Graph Compiler — validates a workflow once and turns its edge list
into a typed lookup table.

Validation runs at activation time and reports every problem it finds in a
single GraphValidationError. A workflow that fails never becomes active, so
the interpreter can assume:
  - every edge endpoint exists and there is exactly one trigger node
  - choice handles are resolved to option indexes
  - condition branches are resolved to on_true / on_false targets
  - loop body and exit edges are resolved
  - no cycle can spin forever without reaching a loop or waiting node

Usage:
    compiled = compile_workflow(definition)
    step = compiled.node("n2")
    step.options[1]   # target node id for option-1, or None
"""
from __future__ import annotations

import re
import structlog
from collections import deque
from dataclasses import dataclass, field
from typing import Optional

from core.errors import GraphValidationError
from models.schemas import (
    CHOICE_NODE_TYPES, WAITING_NODE_TYPES,
    Edge, Node, NodeType, WorkflowDefinition, WorkflowSettings,
)

logger = structlog.get_logger()

OPTION_HANDLE = re.compile(r"^option-([0-9]+)$")
CONDITION_HANDLES = ("true", "false")
LOOP_BODY_HANDLE = "body"
LOOP_EXIT_HANDLE = "exit"

# Nodes a traversal passes straight through within a single event
_PASS_THROUGH = frozenset({NodeType.TRIGGER, NodeType.MESSAGE, NodeType.CONDITION})


def option_handle(index: int) -> str:
    return f"option-{index}"


def parse_option_handle(handle: Optional[str]) -> Optional[int]:
    if not handle:
        return None
    m = OPTION_HANDLE.match(handle)
    return int(m.group(1)) if m else None


# ──────────────────────────────────────────────────────────────
#  Compiled graph
# ──────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class CompiledNode:
    """A node with its outgoing edges resolved by role."""
    node: Node
    next_node_id: Optional[str] = None              # single-successor nodes
    options: tuple[Optional[str], ...] = ()         # button/menu: option index -> target
    on_true: Optional[str] = None                   # condition
    on_false: Optional[str] = None
    loop_body: Optional[str] = None                 # loop
    loop_exit: Optional[str] = None

    @property
    def id(self) -> str:
        return self.node.id

    @property
    def type(self) -> NodeType:
        return self.node.type

    @property
    def data(self):
        return self.node.data

    @property
    def handles(self) -> list[str]:
        return [option_handle(i) for i, target in enumerate(self.options) if target is not None]

    def successors(self) -> list[str]:
        targets = [self.next_node_id, self.on_true, self.on_false, self.loop_body, self.loop_exit]
        targets.extend(self.options)
        return [t for t in targets if t is not None]


@dataclass
class CompiledWorkflow:
    """Read-only, validated form of a WorkflowDefinition used at runtime."""
    definition: WorkflowDefinition
    nodes: dict[str, CompiledNode]
    trigger_node_id: str
    keywords: frozenset[str]
    warnings: list[str] = field(default_factory=list)

    @property
    def id(self) -> str:
        return self.definition.id

    @property
    def version(self) -> int:
        return self.definition.version

    @property
    def name(self) -> str:
        return self.definition.name

    @property
    def settings(self) -> WorkflowSettings:
        return self.definition.settings

    def node(self, node_id: str) -> Optional[CompiledNode]:
        return self.nodes.get(node_id)

    def __contains__(self, node_id: str) -> bool:
        return node_id in self.nodes

    def __repr__(self):
        return f"<CompiledWorkflow {self.id}@v{self.version} [{len(self.nodes)} nodes]>"


# ──────────────────────────────────────────────────────────────
#  Validation
# ──────────────────────────────────────────────────────────────

def validate_structure(wf: WorkflowDefinition) -> list[str]:
    """Static checks that do not need resolved edges. Returns error messages."""
    errors = []
    seen: set[str] = set()
    for n in wf.nodes:
        if n.id in seen:
            errors.append(f"duplicate node id '{n.id}'")
        seen.add(n.id)

    triggers = wf.trigger_nodes
    if len(triggers) != 1:
        errors.append(f"workflow must have exactly one trigger node (found {len(triggers)})")
    if not wf.keyword_set():
        errors.append("workflow has no trigger keywords")

    for e in wf.edges:
        if e.source_node_id not in seen:
            errors.append(f"edge '{e.id}' source '{e.source_node_id}' is not a node of this workflow")
        if e.target_node_id not in seen:
            errors.append(f"edge '{e.id}' target '{e.target_node_id}' is not a node of this workflow")

    for n in wf.nodes:
        if n.type == NodeType.INPUT and not n.data.question.strip():
            errors.append(f"input node '{n.id}' has no question")
        elif n.type in CHOICE_NODE_TYPES:
            blank = [i for i, opt in enumerate(n.data.options) if not opt.strip()]
            if blank:
                errors.append(f"{n.type.value} node '{n.id}' has blank options at {blank}")
    return errors


def _resolve(node: Node, edges: list[Edge], errors: list[str], warnings: list[str]) -> CompiledNode:
    """Resolve one node's outgoing edges into a CompiledNode, collecting problems."""
    nid = node.id

    if node.type in CHOICE_NODE_TYPES:
        options: list[Optional[str]] = [None] * len(node.data.options)
        for e in edges:
            idx = parse_option_handle(e.source_handle)
            if idx is None:
                errors.append(f"{node.type.value} node '{nid}' edge '{e.id}' has handle "
                              f"{e.source_handle!r}, expected option-<index>")
            elif idx >= len(options):
                errors.append(f"{node.type.value} node '{nid}' edge '{e.id}' handle "
                              f"'{e.source_handle}' is out of range ({len(options)} options)")
            elif options[idx] is not None:
                warnings.append(f"node '{nid}' has several edges for '{e.source_handle}', using the first")
            else:
                options[idx] = e.target_node_id
        return CompiledNode(node=node, options=tuple(options))

    if node.type == NodeType.CONDITION:
        branches: dict[str, str] = {}
        for e in edges:
            if e.source_handle not in CONDITION_HANDLES:
                errors.append(f"condition node '{nid}' edge '{e.id}' has handle "
                              f"{e.source_handle!r}, expected 'true' or 'false'")
            elif e.source_handle in branches:
                warnings.append(f"node '{nid}' has several '{e.source_handle}' edges, using the first")
            else:
                branches[e.source_handle] = e.target_node_id
        if not branches:
            errors.append(f"condition node '{nid}' has neither a 'true' nor a 'false' branch")
        return CompiledNode(node=node, on_true=branches.get("true"), on_false=branches.get("false"))

    if node.type == NodeType.LOOP:
        if len(edges) < 2:
            errors.append(f"loop node '{nid}' needs a body and an exit edge (found {len(edges)})")
            return CompiledNode(node=node)
        exit_edge = next((e for e in edges if e.source_handle == LOOP_EXIT_HANDLE), None)
        body_edge = next((e for e in edges if e.source_handle == LOOP_BODY_HANDLE), None)
        if exit_edge is None and body_edge is None:
            # No explicit handles: first declared edge is the body, second the exit
            body_edge, exit_edge = edges[0], edges[1]
        elif body_edge is None:
            body_edge = next(e for e in edges if e is not exit_edge)
        elif exit_edge is None:
            exit_edge = next(e for e in edges if e is not body_edge)
        if len(edges) > 2:
            warnings.append(f"loop node '{nid}' has {len(edges)} edges, only body and exit are used")
        return CompiledNode(node=node, loop_body=body_edge.target_node_id, loop_exit=exit_edge.target_node_id)

    # trigger / message / input / delay: single successor, first declared edge wins
    if len(edges) > 1:
        warnings.append(f"{node.type.value} node '{nid}' has {len(edges)} outgoing edges, using the first")
    return CompiledNode(node=node, next_node_id=edges[0].target_node_id if edges else None)


def _find_unbounded_cycles(nodes: dict[str, CompiledNode]) -> list[str]:
    """
    Nodes on a cycle made only of pass-through nodes (Kahn's algorithm over
    the subgraph that excludes loop and waiting nodes).
    """
    sub = {nid: cn for nid, cn in nodes.items() if cn.type in _PASS_THROUGH}
    indegree = {nid: 0 for nid in sub}
    for cn in sub.values():
        for target in cn.successors():
            if target in sub:
                indegree[target] += 1

    queue = deque(nid for nid, d in indegree.items() if d == 0)
    while queue:
        nid = queue.popleft()
        for target in sub[nid].successors():
            if target in sub:
                indegree[target] -= 1
                if indegree[target] == 0:
                    queue.append(target)
    return sorted(nid for nid, d in indegree.items() if d > 0)


def _reachable(nodes: dict[str, CompiledNode], start: str) -> set[str]:
    seen = {start}
    queue = deque([start])
    while queue:
        for target in nodes[queue.popleft()].successors():
            if target in nodes and target not in seen:
                seen.add(target)
                queue.append(target)
    return seen


def compile_workflow(wf: WorkflowDefinition) -> CompiledWorkflow:
    """
    Validate and compile a workflow.
    Raises GraphValidationError listing every problem found.
    """
    errors = validate_structure(wf)
    if errors:
        logger.error("invalid_workflow", workflow_id=wf.id, errors=errors)
        raise GraphValidationError(wf.id, errors)

    warnings: list[str] = []
    compiled: dict[str, CompiledNode] = {}
    for node in wf.nodes:
        compiled[node.id] = _resolve(node, wf.outgoing(node.id), errors, warnings)

    cyclic = _find_unbounded_cycles(compiled)
    if cyclic:
        errors.append(f"cycle through {cyclic} has no loop or waiting node")

    if errors:
        logger.error("invalid_workflow", workflow_id=wf.id, errors=errors)
        raise GraphValidationError(wf.id, errors)

    trigger_id = wf.trigger_nodes[0].id
    unreachable = sorted(set(compiled) - _reachable(compiled, trigger_id))
    if unreachable:
        warnings.append(f"nodes unreachable from the trigger: {unreachable}")

    for w in warnings:
        logger.warning("workflow_graph_warning", workflow_id=wf.id, warning=w)

    result = CompiledWorkflow(
        definition=wf,
        nodes=compiled,
        trigger_node_id=trigger_id,
        keywords=frozenset(wf.keyword_set()),
        warnings=warnings,
    )
    logger.info("workflow_compiled",
                workflow_id=wf.id,
                version=wf.version,
                nodes=len(compiled),
                edges=len(wf.edges))
    return result
