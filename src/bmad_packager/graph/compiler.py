"""Workflow graph compiler.

Turns the builder's node/edge payload into the canonical v1.1
``workflow.graph.json`` document:

1. index nodes by id (last occurrence wins) and check id syntax
2. check that every edge points at known nodes
3. reject cycles (Kahn's algorithm)
4. pick the entry node (lowest id with in-degree 0)
5. label edges and settle default branches per source node
6. emit nodes sorted by id and edges grouped by source

Compilation is deterministic: the same input always yields the same output,
which the editor's dirty check and the export archive both rely on.
"""

import logging
from collections import deque
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass
from typing import Any

from bmad_packager.core.config import get_config
from bmad_packager.core.ids import is_valid_id
from bmad_packager.core.types import WorkflowGraphBuildResult

logger = logging.getLogger(__name__)

NODE_TYPES = ("step", "decision", "merge", "end", "subworkflow")
DEFAULT_NODE_TYPE = "step"
SINGLE_EDGE_LABEL = "next"
LABEL_MODE_AUTO = "auto"
LABEL_MODE_MANUAL = "manual"


@dataclass(frozen=True)
class EdgeRecord:
    """A structurally valid builder edge and its position in the input."""

    edge: Mapping[str, Any]
    index: int
    source: str
    target: str


def _data(item: Mapping[str, Any]) -> Mapping[str, Any]:
    data = item.get("data")
    return data if isinstance(data, dict) else {}


def field_value(item: Mapping[str, Any], key: str) -> Any:
    """Read a builder field from ``data`` first, then from the item itself."""
    data = _data(item)
    if key in data:
        return data[key]
    return item.get(key)


def _text(value: Any) -> str:
    return value.strip() if isinstance(value, str) else ""


def _string_list(value: Any) -> list[str]:
    if not isinstance(value, list):
        return []
    return [v.strip() for v in value if isinstance(v, str) and v.strip()]


def stable_edge_key(record: EdgeRecord) -> str:
    """Edge id when present, else ``source->target#index``."""
    edge_id = _text(record.edge.get("id"))
    return edge_id or f"{record.source}->{record.target}#{record.index}"


def explicit_label(edge: Mapping[str, Any]) -> str:
    """Label the user chose for an edge, "" when it should be generated.

    Edges in ``auto`` label mode never keep their stored label, so a
    recompilation regenerates it from the current group shape.
    """
    if field_value(edge, "labelMode") == LABEL_MODE_AUTO:
        return ""
    return _text(edge.get("label"))


def topological_order(node_ids: Sequence[str], edges: Iterable[tuple[str, str]]) -> list[str]:
    """Kahn traversal over ``node_ids``.

    Edges whose endpoints are not in ``node_ids`` are ignored. The zero
    in-degree queue starts in ``node_ids`` order.

    Returns:
        Visited node ids. Shorter than ``node_ids`` iff the graph has a cycle.

    """
    indegree = {node_id: 0 for node_id in node_ids}
    outgoing: dict[str, list[str]] = {node_id: [] for node_id in node_ids}
    for source, target in edges:
        if source not in indegree or target not in indegree:
            continue
        outgoing[source].append(target)
        indegree[target] += 1

    queue = deque(node_id for node_id in node_ids if indegree[node_id] == 0)
    order = []
    while queue:
        node_id = queue.popleft()
        order.append(node_id)
        for target in outgoing[node_id]:
            indegree[target] -= 1
            if indegree[target] == 0:
                queue.append(target)
    return order


def group_edges_by_source(records: Iterable[EdgeRecord]) -> list[tuple[str, list[EdgeRecord]]]:
    """Group edges by ascending source id, each group in stable key order."""
    groups: dict[str, list[EdgeRecord]] = {}
    for record in records:
        groups.setdefault(record.source, []).append(record)
    return [(source, sorted(groups[source], key=stable_edge_key)) for source in sorted(groups)]


def resolve_edge_group(
    source: str, group: Sequence[EdgeRecord], warnings: list[str]
) -> list[dict[str, Any]]:
    """Assign labels and the default branch for one source node's edges.

    A single edge is labeled "next" and never carries isDefault. With several
    edges, unlabeled ones become ``branch-<position>`` and exactly one edge is
    written with ``isDefault: true``: the first flagged one, or the first in
    stable order when none is flagged.
    """
    multi = len(group) > 1
    flagged = [r for r in group if field_value(r.edge, "isDefault") is True]
    chosen = (flagged[0] if flagged else group[0]) if multi else None
    if multi and len(flagged) > 1:
        keys = ", ".join(stable_edge_key(r) for r in flagged)
        warnings.append(f"multiple default edges from {source}, keeping the first: {keys}")

    resolved = []
    for position, record in enumerate(group, start=1):
        label = explicit_label(record.edge) or (f"branch-{position}" if multi else SINGLE_EDGE_LABEL)
        out: dict[str, Any] = {}
        edge_id = _text(record.edge.get("id"))
        if edge_id:
            out["id"] = edge_id
        out["from"] = record.source
        out["to"] = record.target
        out["label"] = label
        if record is chosen:
            out["isDefault"] = True
        condition_text = _text(field_value(record.edge, "conditionText"))
        if condition_text:
            out["conditionText"] = condition_text
        condition_expr = field_value(record.edge, "conditionExpr")
        if isinstance(condition_expr, dict):
            out["conditionExpr"] = condition_expr
        resolved.append(out)
    return resolved


def _compile_node(node_id: str, node: Mapping[str, Any], warnings: list[str]) -> dict[str, Any]:
    raw_type = node.get("type")
    node_type = raw_type if raw_type in NODE_TYPES else DEFAULT_NODE_TYPE
    if raw_type and raw_type not in NODE_TYPES:
        warnings.append(f"unknown node type, using {DEFAULT_NODE_TYPE}: {node_id}:{raw_type}")

    out: dict[str, Any] = {"id": node_id, "type": node_type, "file": f"steps/{node_id}.md"}
    for key in ("title", "description", "agentId"):
        value = _text(field_value(node, key))
        if value:
            out[key] = value
    for key in ("inputs", "outputs"):
        values = _string_list(field_value(node, key))
        if values:
            out[key] = values
    return out


def compile_workflow_graph(
    nodes: Sequence[Any] | None, edges: Sequence[Any] | None
) -> WorkflowGraphBuildResult:
    """Compile builder nodes and edges into the canonical graph document.

    Args:
        nodes: Builder nodes (``{id, type, data: {...}}``).
        edges: Builder edges (``{id?, source, target, label?, data: {...}}``).

    Returns:
        WorkflowGraphBuildResult; graph is None when any error was found.

    """
    nodes = nodes if isinstance(nodes, (list, tuple)) else []
    edges = edges if isinstance(edges, (list, tuple)) else []
    warnings: list[str] = []
    errors: list[str] = []

    if not nodes:
        return WorkflowGraphBuildResult(graph=None, errors=["graph has no nodes"])

    nodes_by_id: dict[str, Mapping[str, Any]] = {}
    duplicates: list[str] = []
    invalid: list[str] = []
    for index, node in enumerate(nodes):
        node_id = node.get("id") if isinstance(node, dict) else None
        if not isinstance(node_id, str) or not node_id:
            invalid.append(f"<missing id at index {index}>")
            continue
        if node_id in nodes_by_id and node_id not in duplicates:
            duplicates.append(node_id)
        nodes_by_id[node_id] = node

    if duplicates:
        warnings.append(f"duplicate node ids, last occurrence wins: {', '.join(duplicates)}")
    invalid.extend(node_id for node_id in nodes_by_id if not is_valid_id(node_id))
    if invalid:
        errors.append(f"invalid node ids: {', '.join(invalid)}")

    records: list[EdgeRecord] = []
    for index, edge in enumerate(edges):
        source = edge.get("source") if isinstance(edge, dict) else None
        target = edge.get("target") if isinstance(edge, dict) else None
        if not isinstance(source, str) or not source or not isinstance(target, str) or not target:
            errors.append(f"incomplete edge (missing source/target): index={index}")
            continue
        if source not in nodes_by_id:
            errors.append(f"edge source does not exist: {source} (index={index})")
            continue
        if target not in nodes_by_id:
            errors.append(f"edge target does not exist: {target} (index={index})")
            continue
        records.append(EdgeRecord(edge=edge, index=index, source=source, target=target))

    node_ids = list(nodes_by_id)
    pairs = [(r.source, r.target) for r in records]
    if records and len(topological_order(node_ids, pairs)) != len(node_ids):
        errors.append("cycle detected: remove the circular edges before exporting")

    targets = {r.target for r in records}
    candidates = sorted(node_id for node_id in node_ids if node_id not in targets)
    entry_node_id = candidates[0] if candidates else ""
    if len(candidates) > 1:
        warnings.append(f"multiple start nodes, using entryNodeId={entry_node_id}")
    if not entry_node_id:
        errors.append("cannot determine entry node: no node has in-degree 0")

    if errors:
        return WorkflowGraphBuildResult(graph=None, warnings=warnings, errors=errors)

    compiled_nodes = [_compile_node(node_id, nodes_by_id[node_id], warnings) for node_id in sorted(node_ids)]
    compiled_edges = []
    for source, group in group_edges_by_source(records):
        compiled_edges.extend(resolve_edge_group(source, group, warnings))

    graph = {
        "schemaVersion": get_config().schema_version,
        "entryNodeId": entry_node_id,
        "nodes": compiled_nodes,
        "edges": compiled_edges,
    }
    logger.debug(
        "Compiled graph: %d node(s), %d edge(s), entry=%s",
        len(compiled_nodes),
        len(compiled_edges),
        entry_node_id,
    )
    return WorkflowGraphBuildResult(graph=graph, warnings=warnings)
