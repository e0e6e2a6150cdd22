# /flowbot/engine/validator.py

"""
Publish-time validation of a flow graph.

Pure functions: no database, no network, no logging. The report lists
structural errors (which block publishing) and warnings (which don't),
followed by whatever each node type's own `validate` reports.

Infinite loops are detected on the graph restricted to nodes that never
wait for the contact. Any cycle left in that subgraph would spin without
external input, so it is an error; cycles through a menu, an input or a
delay are legitimate conversational loops.
"""

from collections import Counter
from typing import Dict, List, Optional, Set, Tuple

from flowbot.engine.nodes.registry import NodeExecutorRegistry
from flowbot.models.execution import ValidationIssue, ValidationReport
from flowbot.models.flow import Flow, FlowGraph, FlowNode

# Handoff stops the flow only when it pauses the bot; see HandoffNode.waits_for_reply.
BREAK_POINT_TYPES = frozenset({"menu", "input", "buttons", "list"})


def _data_targets(node: FlowNode) -> List[str]:
    """Node ids a node can route to without an edge (jumps, HTTP error routes)."""
    targets = []
    data = node.data
    if node.type == "jump":
        targets.append(data.get("targetNodeId") or data.get("target_node_id") or data.get("target"))
    if node.type == "http":
        on_error = data.get("onError") or {}
        targets.extend([
            data.get("nextNodeId") or data.get("next_node_id"),
            on_error.get("errorNextNodeId") or data.get("error_next_node_id"),
        ])
    return [target for target in targets if target]


def is_break_point(node: FlowNode, registry: NodeExecutorRegistry, treat_delay_as_break_point: bool = True) -> bool:
    if node.type in BREAK_POINT_TYPES:
        return True
    if node.type == "delay":
        return treat_delay_as_break_point
    executor = registry.get(node.type)
    return bool(executor and executor.waits_for_reply(node))


def routing_adjacency(graph: FlowGraph) -> List[List[int]]:
    """Edge adjacency plus the pseudo-edges created by jump and HTTP route targets."""
    adjacency = graph.adjacency()
    for position, node in enumerate(graph.nodes):
        for target in _data_targets(node):
            target_position = graph.index_of(target)
            if target_position is not None:
                adjacency[position].append(target_position)
    return adjacency


def find_infinite_loops(graph: FlowGraph, registry: NodeExecutorRegistry,
                        treat_delay_as_break_point: bool = True) -> List[List[str]]:
    """
    Cycles that contain no break point, as lists of node ids (first id
    repeated at the end). Iterative DFS with an explicit stack so deep flows
    never hit the recursion limit; each node is expanded once.
    """
    adjacency = routing_adjacency(graph)
    blocked = [is_break_point(node, registry, treat_delay_as_break_point) for node in graph.nodes]

    # Start nodes first so the reported path reads from the entry point.
    order = [graph.index_of(node.id) for node in graph.start_nodes()]
    first = set(order)
    order += [position for position in range(len(graph.nodes)) if position not in first]

    visited = [False] * len(graph.nodes)
    on_stack = [False] * len(graph.nodes)
    cycles: List[List[str]] = []
    seen: Set[Tuple[str, ...]] = set()

    for root in order:
        if visited[root] or blocked[root]:
            continue
        path: List[int] = [root]
        stack: List[Tuple[int, int]] = [(root, 0)]
        visited[root] = on_stack[root] = True

        while stack:
            current, next_child = stack[-1]
            children = adjacency[current]
            if next_child >= len(children):
                stack.pop()
                path.pop()
                on_stack[current] = False
                continue
            stack[-1] = (current, next_child + 1)

            child = children[next_child]
            if blocked[child]:
                continue
            if on_stack[child]:
                loop = path[path.index(child):]
                key = tuple(sorted(graph.nodes[i].id for i in loop))
                if key not in seen:
                    seen.add(key)
                    cycles.append([graph.nodes[i].id for i in loop] + [graph.nodes[child].id])
                continue
            if not visited[child]:
                visited[child] = on_stack[child] = True
                path.append(child)
                stack.append((child, 0))
    return cycles


def validate_flow(flow: Flow, registry: NodeExecutorRegistry, treat_delay_as_break_point: bool = True) -> ValidationReport:
    graph = flow.graph
    errors: List[ValidationIssue] = []
    warnings: List[ValidationIssue] = []

    if not graph.nodes:
        errors.append(ValidationIssue(message="Flow has no nodes"))

    for node_id in graph.duplicate_ids:
        errors.append(ValidationIssue(node_id=node_id, message=f"Duplicate node id '{node_id}'"))

    for edge in graph.dangling_edges():
        missing = edge.source if edge.source not in graph else edge.target
        errors.append(ValidationIssue(node_id=edge.source if edge.source in graph else None,
                                      message=f"Edge {edge.id or ''} {edge.source} -> {edge.target} references unknown node '{missing}'"))

    handle_counts = Counter((edge.source, edge.source_handle) for edge in graph.edges)
    for (source, handle), count in handle_counts.items():
        if count > 1:
            label = f"handle '{handle}'" if handle else "its default output"
            warnings.append(ValidationIssue(node_id=source, message=f"Node {source} has {count} edges leaving {label}; only the first is followed"))

    # Start node
    starts = graph.start_nodes()
    if not starts:
        errors.append(ValidationIssue(message="Flow must have a start node"))
    elif len(starts) > 1:
        errors.append(ValidationIssue(message=f"Flow must have exactly one start node (found {len(starts)})"))
    for start in starts:
        if not graph.outgoing(start.id):
            errors.append(ValidationIssue(node_id=start.id, message="Start node has no outgoing connection"))

    if graph.nodes and not any(node.type == "end" for node in graph.nodes):
        warnings.append(ValidationIssue(message="Flow has no end node; conversations will end when a branch runs out"))

    # Orphans
    routed_to: Set[str] = {target for node in graph.nodes for target in _data_targets(node)}
    for node in graph.nodes:
        if node.type == "start":
            continue
        if not graph.incoming(node.id) and node.id not in routed_to:
            warnings.append(ValidationIssue(node_id=node.id, message=f"Node '{node.label}' is not reachable: it has no incoming connection"))

    # Per-type configuration
    for node in graph.nodes:
        result = registry.validate_node(node, graph.outgoing(node.id), graph)
        errors.extend(ValidationIssue(node_id=node.id, message=message) for message in result["errors"])
        warnings.extend(ValidationIssue(node_id=node.id, message=message) for message in result["warnings"])

    # Loops
    labels: Dict[str, str] = {node.id: node.label for node in graph.nodes}
    for cycle in find_infinite_loops(graph, registry, treat_delay_as_break_point):
        path = " → ".join(labels.get(node_id, node_id) for node_id in cycle)
        errors.append(ValidationIssue(node_id=cycle[0], message=f"Infinite loop detected: {path}"))

    return ValidationReport(valid=not errors, errors=errors, warnings=warnings)


def can_publish(flow: Flow, registry: NodeExecutorRegistry) -> Tuple[bool, Optional[str]]:
    report = validate_flow(flow, registry)
    if report.valid:
        return True, None
    return False, report.errors[0].message
