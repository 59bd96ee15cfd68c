"""Load-time migration of stored builder graphs.

Older graphs bind nodes to agents by ``data.agent`` (an id, name or title),
use ``from``/``to`` edge keys and keep labels or flags outside ``data``. The
migration rewrites them once, when the graph is loaded, so the compiler only
ever sees the current builder shape.

Each result carries a signature of the graph before and after migration. A
caller persists the migrated graph only when the two differ.
"""

import json
import logging
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from typing import Any

from bmad_packager.agents import AgentListItem
from bmad_packager.graph.compiler import (
    DEFAULT_NODE_TYPE,
    LABEL_MODE_AUTO,
    LABEL_MODE_MANUAL,
    SINGLE_EDGE_LABEL,
    EdgeRecord,
    group_edges_by_source,
)

logger = logging.getLogger(__name__)

_LABEL_MODES = (LABEL_MODE_AUTO, LABEL_MODE_MANUAL)


@dataclass(frozen=True)
class GraphMigrationResult:
    """Outcome of migrating a stored builder graph.

    Attributes:
        graph: ``{"nodes": [...], "edges": [...]}`` in the current builder shape.
        error: Parse problem, None when the JSON was usable.
        unmapped_agent_refs: ``"<nodeId>:<ref>"`` for legacy agent references
            that matched no agent.
        migrated_agent_count: Nodes whose legacy reference was resolved.
        signature_before: Canonical signature of the stored graph.
        signature_after: Canonical signature of the migrated graph.

    """

    graph: dict[str, list[dict[str, Any]]]
    error: str | None = None
    unmapped_agent_refs: list[str] = field(default_factory=list)
    migrated_agent_count: int = 0
    signature_before: str = ""
    signature_after: str = ""

    @property
    def changed(self) -> bool:
        """Whether the migration altered anything worth persisting."""
        return self.signature_before != self.signature_after


def _object(value: Any) -> dict[str, Any]:
    return value if isinstance(value, dict) else {}


def _str(value: Any) -> str:
    return value if isinstance(value, str) else ""


def _string_list(value: Any) -> list[str]:
    if not isinstance(value, list):
        return []
    return [v.strip() for v in value if isinstance(v, str) and v.strip()]


def _number(value: Any) -> float | int:
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return value
    return 0


def normalize_node(raw: Any) -> dict[str, Any] | None:
    """Read a stored node leniently; None when it has no id."""
    if not isinstance(raw, dict):
        return None
    node_id = _str(raw.get("id"))
    if not node_id:
        return None
    # Compact nodes keep their fields at the top level instead of under data
    top_level = {k: v for k, v in raw.items() if k not in ("id", "type", "position", "data")}
    data = {**top_level, **_object(raw.get("data"))}
    position = _object(raw.get("position"))
    title = (_str(data.get("title")) or _str(data.get("name")) or node_id).strip() or "Untitled"

    node_data: dict[str, Any] = {
        "title": title,
        "instructions": _str(data.get("instructions")),
        "agentId": _str(data.get("agentId")),
        "inputs": _string_list(data.get("inputs")),
        "outputs": _string_list(data.get("outputs")),
        "setsVariables": _string_list(data.get("setsVariables")),
    }
    description = _str(data.get("description")).strip()
    if description:
        node_data["description"] = description
    subworkflow_id = data.get("subworkflowId")
    if isinstance(subworkflow_id, int) and not isinstance(subworkflow_id, bool):
        node_data["subworkflowId"] = subworkflow_id

    # Unknown types pass through so the compiler can warn about them
    raw_type = _str(raw.get("type")).strip()
    return {
        "id": node_id,
        "type": raw_type or DEFAULT_NODE_TYPE,
        "position": {"x": _number(position.get("x")), "y": _number(position.get("y"))},
        "data": node_data,
    }


def normalize_edge(raw: Any, index: int) -> dict[str, Any] | None:
    """Read a stored edge leniently; None when an endpoint is missing."""
    if not isinstance(raw, dict):
        return None
    source = _str(raw.get("source")) or _str(raw.get("from"))
    target = _str(raw.get("target")) or _str(raw.get("to"))
    if not source or not target:
        return None
    data = _object(raw.get("data"))
    label = _str(raw.get("label")) or _str(data.get("label"))
    condition_text = _str(raw.get("conditionText")) or _str(data.get("conditionText"))
    is_default = raw.get("isDefault") if isinstance(raw.get("isDefault"), bool) else data.get("isDefault")
    label_mode = data.get("labelMode")
    if label_mode not in _LABEL_MODES:
        label_mode = LABEL_MODE_MANUAL if label else LABEL_MODE_AUTO

    edge_data: dict[str, Any] = {"labelMode": label_mode}
    if condition_text:
        edge_data["conditionText"] = condition_text
    if isinstance(is_default, bool):
        edge_data["isDefault"] = is_default
    condition_expr = raw.get("conditionExpr", data.get("conditionExpr"))
    if isinstance(condition_expr, dict):
        edge_data["conditionExpr"] = condition_expr
    return {
        "id": _str(raw.get("id")) or f"e-{source}-{target}-{index}",
        "source": source,
        "target": target,
        "label": label,
        "data": edge_data,
    }


def _signature_node(node: Mapping[str, Any]) -> dict[str, Any]:
    return {
        "id": node["id"],
        "type": node["type"],
        "position": node["position"],
        "data": node["data"],
    }


def _signature_edge(edge: Mapping[str, Any]) -> dict[str, Any]:
    data = edge["data"]
    return {
        "id": edge["id"],
        "source": edge["source"],
        "target": edge["target"],
        "label": edge["label"],
        "conditionText": data.get("conditionText", ""),
        "isDefault": bool(data.get("isDefault")),
        "labelMode": data["labelMode"],
    }


def graph_signature(nodes: Iterable[Any], edges: Iterable[Any]) -> str:
    """Canonical, order-independent signature of a builder graph.

    Two graphs that differ only in node or edge order have the same signature.
    """
    normalized_nodes = [n for n in (normalize_node(raw) for raw in nodes) if n is not None]
    normalized_edges = [
        e for e in (normalize_edge(raw, index) for index, raw in enumerate(edges)) if e is not None
    ]
    payload = {
        "nodes": sorted((_signature_node(n) for n in normalized_nodes), key=lambda n: n["id"]),
        "edges": sorted((_signature_edge(e) for e in normalized_edges), key=lambda e: e["id"]),
    }
    return json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


class _AgentResolver:
    """Resolve legacy agent references by id, then name, then title."""

    def __init__(self, agents: Iterable[AgentListItem]) -> None:
        agents = list(agents)
        self._by_id = {a.id: a.id for a in agents}
        self._by_name = {a.name.strip().lower(): a.id for a in agents}
        self._by_title = {a.title.strip().lower(): a.id for a in agents}

    def resolve(self, ref: str) -> str:
        ref = ref.strip()
        if not ref:
            return ""
        if ref in self._by_id:
            return self._by_id[ref]
        lowered = ref.lower()
        return self._by_name.get(lowered) or self._by_title.get(lowered) or ""


def _relabel_auto_edges(edges: list[dict[str, Any]]) -> None:
    records = [EdgeRecord(edge=e, index=i, source=e["source"], target=e["target"]) for i, e in enumerate(edges)]
    for _, group in group_edges_by_source(records):
        multi = len(group) > 1
        for position, record in enumerate(group, start=1):
            if record.edge["data"]["labelMode"] == LABEL_MODE_AUTO:
                record.edge["label"] = f"branch-{position}" if multi else SINGLE_EDGE_LABEL


def _settle_decision_defaults(nodes: list[dict[str, Any]], edges: list[dict[str, Any]]) -> None:
    decisions = {n["id"] for n in nodes if n["type"] == "decision"}
    records = [EdgeRecord(edge=e, index=i, source=e["source"], target=e["target"]) for i, e in enumerate(edges)]
    for source, group in group_edges_by_source(records):
        if source not in decisions:
            continue
        keep = next((r for r in group if r.edge["data"].get("isDefault") is True), group[0])
        for record in group:
            record.edge["data"]["isDefault"] = record is keep


def _empty_result(error: str | None = None) -> GraphMigrationResult:
    signature = graph_signature([], [])
    return GraphMigrationResult(
        graph={"nodes": [], "edges": []},
        error=error,
        signature_before=signature,
        signature_after=signature,
    )


def migrate_legacy_graph(raw_graph_json: str | None, agents: Iterable[AgentListItem] = ()) -> GraphMigrationResult:
    """Bring a stored builder graph up to the current shape.

    Args:
        raw_graph_json: Graph JSON as stored by the editor.
        agents: Known agents, used to resolve legacy ``data.agent`` references.

    Returns:
        GraphMigrationResult. Unparsable JSON yields an empty graph and error.

    """
    trimmed = (raw_graph_json or "").strip()
    if not trimmed:
        return _empty_result()
    try:
        parsed = json.loads(trimmed)
    except json.JSONDecodeError:
        return _empty_result("graph JSON could not be parsed (invalid JSON)")
    if not isinstance(parsed, dict):
        return _empty_result("graph JSON must be an object")

    raw_nodes = parsed.get("nodes") if isinstance(parsed.get("nodes"), list) else []
    raw_edges = parsed.get("edges") if isinstance(parsed.get("edges"), list) else []
    resolver = _AgentResolver(agents)

    nodes: list[dict[str, Any]] = []
    unmapped: list[str] = []
    migrated = 0
    for raw in raw_nodes:
        node = normalize_node(raw)
        if node is None:
            continue
        legacy_ref = _str(_object(raw.get("data")).get("agent")) or _str(raw.get("agent"))
        if legacy_ref and not node["data"]["agentId"]:
            resolved = resolver.resolve(legacy_ref)
            if resolved:
                node["data"]["agentId"] = resolved
                migrated += 1
            else:
                unmapped.append(f"{node['id']}:{legacy_ref}")
        nodes.append(node)

    edges = [e for e in (normalize_edge(raw, index) for index, raw in enumerate(raw_edges)) if e is not None]
    _relabel_auto_edges(edges)
    _settle_decision_defaults(nodes, edges)

    if migrated or unmapped:
        logger.debug("Migrated %d legacy agent reference(s), %d unmapped", migrated, len(unmapped))
    return GraphMigrationResult(
        graph={"nodes": nodes, "edges": edges},
        unmapped_agent_refs=unmapped,
        migrated_agent_count=migrated,
        signature_before=graph_signature(raw_nodes, raw_edges),
        signature_after=graph_signature(nodes, edges),
    )
