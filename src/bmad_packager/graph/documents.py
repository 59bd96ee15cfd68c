"""Rendering of workflow.md and step files from a builder graph.

Frontmatter is written with ``yaml.safe_dump`` so every rendered document
reads back through the frontmatter codec and validates against the
workflow/step frontmatter schemas.

Step transitions use the same labelling and default-branch rules as the
graph compiler, so a step file never disagrees with workflow.graph.json.
"""

import json
import logging
import re
from collections.abc import Iterable, Mapping, Sequence
from datetime import date
from typing import Any

import yaml

from bmad_packager.core.config import get_config
from bmad_packager.export.frontmatter import split_markdown_frontmatter
from bmad_packager.graph.compiler import (
    DEFAULT_NODE_TYPE,
    NODE_TYPES,
    EdgeRecord,
    field_value,
    group_edges_by_source,
    resolve_edge_group,
    topological_order,
)

logger = logging.getLogger(__name__)

WORKFLOW_TYPE = "workflow"
_V11_VERSION_RE = re.compile(r"^1\.1(\.\d+)?$")


def _dump_yaml(data: Mapping[str, Any]) -> str:
    return yaml.safe_dump(dict(data), sort_keys=False, allow_unicode=True, default_flow_style=False)


def _with_frontmatter(frontmatter: Mapping[str, Any], body: str) -> str:
    return f"---\n{_dump_yaml(frontmatter)}---\n\n{body}"


def _text(value: Any) -> str:
    return value.strip() if isinstance(value, str) else ""


def _string_list(value: Any) -> list[str]:
    if not isinstance(value, list):
        return []
    return [v.strip() for v in value if isinstance(v, str) and v.strip()]


def _node_ids(nodes: Sequence[Mapping[str, Any]]) -> list[str]:
    return [n["id"] for n in nodes if isinstance(n.get("id"), str) and n["id"]]


def _edge_records(nodes: Sequence[Mapping[str, Any]], edges: Iterable[Any]) -> list[EdgeRecord]:
    known = set(_node_ids(nodes))
    records = []
    for index, edge in enumerate(edges):
        if not isinstance(edge, dict):
            continue
        source, target = edge.get("source"), edge.get("target")
        if source in known and target in known:
            records.append(EdgeRecord(edge=edge, index=index, source=source, target=target))
    return records


def ordered_nodes(nodes: Sequence[Mapping[str, Any]], edges: Iterable[Any]) -> list[Mapping[str, Any]]:
    """Nodes in topological order, or in the given order if there is a cycle."""
    by_id = {n["id"]: n for n in nodes if isinstance(n.get("id"), str) and n["id"]}
    pairs = [(r.source, r.target) for r in _edge_records(nodes, edges)]
    order = topological_order(list(by_id), pairs)
    if len(order) != len(by_id):
        logger.debug("Graph has a cycle, keeping node order for rendering")
        return list(by_id.values())
    return [by_id[node_id] for node_id in order]


def current_node_id(nodes: Sequence[Mapping[str, Any]], edges: Iterable[Any]) -> str:
    """The unique start node, or "" when there is none or several."""
    node_ids = _node_ids(nodes)
    targets = {r.target for r in _edge_records(nodes, edges)}
    starts = [node_id for node_id in node_ids if node_id not in targets]
    return starts[0] if len(starts) == 1 else ""


def _title(node: Mapping[str, Any]) -> str:
    return _text(field_value(node, "title")) or node["id"]


def normalize_workflow_variables(variables: Mapping[str, Any] | Iterable[tuple[str, Any]] | None) -> dict[str, str]:
    """Trim keys, drop empty ones and keep the last value of duplicates."""
    items = variables.items() if isinstance(variables, Mapping) else (variables or [])
    normalized: dict[str, str] = {}
    for key, value in items:
        key = str(key).strip()
        if not key:
            continue
        normalized[key] = "" if value is None else str(value)
    return normalized


def serialize_workflow_variables(variables: Mapping[str, Any] | Iterable[tuple[str, Any]] | None) -> str:
    """Render the ``variables:`` frontmatter block.

    Example:
        >>> serialize_workflow_variables({"topic": "AI"})
        'variables:\\n  topic: AI\\n'

    """
    return _dump_yaml({"variables": normalize_workflow_variables(variables)})


def parse_workflow_variables(workflow_md: str | None) -> dict[str, str]:
    """Read ``variables`` from workflow.md frontmatter; {} when absent or invalid.

    Strings are kept, dates become ISO text and other values are stored as
    JSON text.
    """
    data, _ = split_markdown_frontmatter(workflow_md)
    raw = (data or {}).get("variables")
    if not isinstance(raw, dict):
        return {}
    variables = {}
    for key, value in raw.items():
        key = str(key).strip()
        if not key:
            continue
        if value is None:
            variables[key] = ""
        elif isinstance(value, str):
            variables[key] = value
        elif isinstance(value, date):
            # Unquoted YAML dates and timestamps
            variables[key] = value.isoformat()
        else:
            variables[key] = json.dumps(value, ensure_ascii=False, default=str)
    return variables


def is_v11_workflow_markdown(workflow_md: str | None) -> bool:
    """Whether workflow.md already carries v1.1 frontmatter."""
    data, _ = split_markdown_frontmatter(workflow_md)
    version = (data or {}).get("schemaVersion")
    return isinstance(version, str) and _V11_VERSION_RE.match(version.strip()) is not None


def has_legacy_step_files(step_files: Mapping[str, Any]) -> bool:
    """Whether any Markdown step file lives outside ``steps/``."""
    return any(key.endswith(".md") and not key.startswith("steps/") for key in step_files)


def render_workflow_markdown(
    name: str,
    nodes: Sequence[Mapping[str, Any]],
    edges: Sequence[Any],
    variables: Mapping[str, Any] | Iterable[tuple[str, Any]] | None = None,
) -> str:
    """Render a v1.1 workflow.md with frontmatter and a steps index."""
    frontmatter = {
        "schemaVersion": get_config().schema_version,
        "workflowType": WORKFLOW_TYPE,
        "currentNodeId": current_node_id(nodes, edges),
        "stepsCompleted": [],
        "variables": normalize_workflow_variables(variables),
        "decisionLog": [],
        "artifacts": [],
    }
    index_lines = [
        f"- [{node['id']}](steps/{node['id']}.md) — {_title(node)}" for node in ordered_nodes(nodes, edges)
    ]
    safe_name = (name or "").strip() or "Untitled Workflow"
    body = f"# {safe_name}\n\n## Steps Index\n\n"
    if index_lines:
        body += "\n".join(index_lines) + "\n"
    return _with_frontmatter(frontmatter, body)


def _transitions(source: str, group: Sequence[EdgeRecord]) -> list[dict[str, Any]]:
    transitions = []
    for edge in resolve_edge_group(source, group, warnings=[]):
        transition: dict[str, Any] = {"to": edge["to"], "label": edge["label"]}
        if edge.get("isDefault"):
            transition["isDefault"] = True
        if edge.get("conditionText"):
            transition["conditionText"] = edge["conditionText"]
        transitions.append(transition)
    return transitions


def render_step_files(nodes: Sequence[Mapping[str, Any]], edges: Sequence[Any]) -> dict[str, str]:
    """Render ``steps/<id>.md`` for every node, keyed by step-file path."""
    groups = dict(group_edges_by_source(_edge_records(nodes, edges)))
    schema_version = get_config().schema_version
    files = {}
    for node in ordered_nodes(nodes, edges):
        node_id = node["id"]
        title = _title(node)
        raw_type = node.get("type")
        frontmatter = {
            "schemaVersion": schema_version,
            "nodeId": node_id,
            "type": raw_type if raw_type in NODE_TYPES else DEFAULT_NODE_TYPE,
            "title": title,
            "agentId": _text(field_value(node, "agentId")),
            "inputs": _string_list(field_value(node, "inputs")),
            "outputs": _string_list(field_value(node, "outputs")),
            "setsVariables": _string_list(field_value(node, "setsVariables")),
            "transitions": _transitions(node_id, groups.get(node_id, [])),
        }
        instructions = _text(field_value(node, "instructions"))
        body = f"# {title}\n\n## Instructions\n\n"
        if instructions:
            body += f"{instructions}\n"
        files[f"steps/{node_id}.md"] = _with_frontmatter(frontmatter, body)
    return files
