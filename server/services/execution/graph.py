"""Graph analysis for the runner: ordering, start nodes and route selection.

Pure functions over a WorkflowDefinition. Nothing here performs I/O.
"""

import heapq
from collections import defaultdict
from typing import Any, Dict, Iterable, List, Mapping, Set

from constants import (
    ERROR_TRIGGER,
    FILTER_TYPES,
    LOOP,
    LOOP_BODY_OUTPUT,
    SWITCH,
    TRIGGER_CARRIERS,
    FALSE_OUTPUTS,
    TRUE_OUTPUTS,
    is_trigger_node,
    switch_output_handles,
)
from models.workflow import Connection, WorkflowDefinition, WorkflowNode
from services.execution.context import FILTER_RESULT_KEY, SWITCH_OUTPUT_KEY
from services.execution.errors import WorkflowCycleError


def outgoing_index(definition: WorkflowDefinition) -> Dict[str, List[Connection]]:
    index: Dict[str, List[Connection]] = defaultdict(list)
    for conn in definition.connections:
        index[conn.source].append(conn)
    return index


def topological_order(definition: WorkflowDefinition) -> List[str]:
    """Kahn's algorithm, stable by node declaration order.

    Raises:
        WorkflowCycleError: listing the nodes that could not be ordered.
    """
    ids = [node.id for node in definition.nodes]
    position = {node_id: i for i, node_id in enumerate(ids)}
    in_degree = {node_id: 0 for node_id in ids}
    successors: Dict[str, List[str]] = defaultdict(list)

    for conn in definition.connections:
        if conn.source not in in_degree or conn.target not in in_degree:
            continue
        successors[conn.source].append(conn.target)
        in_degree[conn.target] += 1

    ready = [position[node_id] for node_id in ids if in_degree[node_id] == 0]
    heapq.heapify(ready)
    order: List[str] = []
    while ready:
        node_id = ids[heapq.heappop(ready)]
        order.append(node_id)
        for target in successors[node_id]:
            in_degree[target] -= 1
            if in_degree[target] == 0:
                heapq.heappush(ready, position[target])

    if len(order) != len(ids):
        raise WorkflowCycleError([node_id for node_id in ids if in_degree[node_id] > 0])
    return order


def start_nodes(definition: WorkflowDefinition, initial_data: Mapping[str, Any]) -> Set[str]:
    """Nodes active at the start of a run.

    The trigger named by an initial-data carrier wins; otherwise every trigger
    node; otherwise every node without an inbound connection.
    """
    nodes = definition.nodes
    for carrier, node_type in TRIGGER_CARRIERS.items():
        payload = initial_data.get(carrier)
        if payload is None:
            continue
        node_id = payload.get("nodeId") if isinstance(payload, dict) else None
        matching = {n.id for n in nodes if n.type == node_type and (node_id is None or n.id == node_id)}
        if matching:
            return matching

    triggers = {n.id for n in nodes if is_trigger_node(n.type)}
    if triggers:
        return triggers

    targets = {conn.target for conn in definition.connections}
    return {n.id for n in nodes if n.id not in targets}


def _is_error_edge(conn: Connection, nodes: Mapping[str, WorkflowNode]) -> bool:
    target = nodes.get(conn.target)
    return target is not None and target.type == ERROR_TRIGGER


def error_successors(node_id: str, outgoing: Mapping[str, List[Connection]],
                     nodes: Mapping[str, WorkflowNode]) -> List[str]:
    """Error-trigger nodes wired directly after ``node_id``."""
    return [c.target for c in outgoing.get(node_id, []) if _is_error_edge(c, nodes)]


def loop_body_edges(node_id: str, outgoing: Mapping[str, List[Connection]]) -> List[Connection]:
    return [c for c in outgoing.get(node_id, []) if c.from_output == LOOP_BODY_OUTPUT]


def select_routes(node: WorkflowNode, context: Mapping[str, Any],
                  outgoing: Mapping[str, List[Connection]],
                  nodes: Mapping[str, WorkflowNode]) -> List[str]:
    """Targets to activate after ``node`` succeeded with ``context``.

    Error-trigger edges only fire on failure and loop-body edges are driven by
    the runner, so neither is returned here.
    """
    edges = [c for c in outgoing.get(node.id, []) if not _is_error_edge(c, nodes)]

    if node.type in FILTER_TYPES:
        signal = context.get(FILTER_RESULT_KEY) or {}
        handles = TRUE_OUTPUTS if signal.get("passed") else FALSE_OUTPUTS
        edges = [c for c in edges if c.from_output in handles]
    elif node.type == SWITCH:
        index = context.get(SWITCH_OUTPUT_KEY)
        edges = [c for c in edges if index is not None and c.from_output in switch_output_handles(index)]
    elif node.type == LOOP:
        edges = [c for c in edges if c.from_output != LOOP_BODY_OUTPUT]

    return [c.target for c in edges]


def descendants(starts: Iterable[str], outgoing: Mapping[str, List[Connection]]) -> Set[str]:
    """All nodes reachable from ``starts`` (inclusive)."""
    seen: Set[str] = set()
    stack = list(starts)
    while stack:
        node_id = stack.pop()
        if node_id in seen:
            continue
        seen.add(node_id)
        stack.extend(c.target for c in outgoing.get(node_id, []))
    return seen
