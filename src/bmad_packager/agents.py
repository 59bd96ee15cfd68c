"""Agent manifest builder (agents.json).

Raw agents JSON arrives either as a legacy array of ``{name, role}`` records
or as a v1.1 manifest object. Both shapes go through one normalization
function with two explicit modes:

- AgentParseMode.STRICT: used by export. Invalid or duplicate agent records
  are fatal errors.
- AgentParseMode.LENIENT: used for read-only listing. Invalid records are
  filtered out and reported as warnings.

Usage:
    from bmad_packager.agents import build_agents_manifest

    result = build_agents_manifest(raw_text)
    if result.errors:
        ...
"""

import json
import logging
import re
from collections.abc import Iterable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from bmad_packager.core.config import get_config
from bmad_packager.core.ids import is_valid_id, unique_agent_id
from bmad_packager.core.types import (
    AgentsManifestBuildResult,
    ValidationResult,
    WorkflowExportInput,
)
from bmad_packager.export.validators import DocumentKind, format_violations, get_validator

logger = logging.getLogger(__name__)

NO_AGENTS_ERROR = "no agents configured"

_SCHEMA_VERSION_RE = re.compile(r"^1\.1(\.\d+)?$")
_DISPLAY_ERROR_SAMPLE = 3


class AgentParseMode(str, Enum):
    """How invalid agent records are treated during normalization."""

    STRICT = "strict"
    LENIENT = "lenient"


@dataclass(frozen=True)
class AgentsNormalization:
    """Normalized agents plus everything noticed along the way.

    Attributes:
        agents: Canonical agent dicts, in input order.
        warnings: Non-fatal notes (filtered sub-records, schemaVersion fixes).
        errors: Fatal problems. Always empty in lenient mode, where record
            problems are reported as warnings instead.
        problems: Record-level problems (bad object, bad or duplicate id),
            regardless of mode.

    """

    agents: list[dict[str, Any]]
    warnings: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    problems: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class AgentListItem:
    """Flat agent view for listings and editors."""

    id: str
    name: str
    title: str
    icon: str
    role: str
    identity: str
    communication_style: str
    principles: list[str]


@dataclass(frozen=True)
class AgentListResult:
    """Lenient parse outcome for display.

    Attributes:
        manifest: Manifest made of the valid agents (possibly empty).
        agents: Flat list items for the same agents.
        warnings: Everything filtered out.
        error: Summary of record problems, None when the data is clean.

    """

    manifest: dict[str, Any]
    agents: list[AgentListItem]
    warnings: list[str] = field(default_factory=list)
    error: str | None = None


@dataclass(frozen=True)
class AgentReference:
    """Number of nodes of one workflow bound to an agent."""

    workflow_id: str
    workflow_name: str
    count: int


def _is_object(value: Any) -> bool:
    return isinstance(value, dict)


def _text(value: Any) -> str:
    return value.strip() if isinstance(value, str) else ""


def _text_list(value: Any) -> list[str]:
    if not isinstance(value, list):
        return []
    return [v.strip() for v in value if isinstance(v, str) and v.strip()]


def _principles(value: Any) -> list[str]:
    if isinstance(value, list):
        return _text_list(value)
    if isinstance(value, str):
        return [line.strip() for line in value.split("\n") if line.strip()]
    return []


def _positive_int(value: Any) -> int | None:
    if isinstance(value, int) and not isinstance(value, bool) and value >= 1:
        return value
    return None


def default_tools() -> dict[str, Any]:
    """Tool policy used when an agent declares none."""
    return {"fs": {"enabled": True}, "mcp": {"enabled": False, "allowedServers": []}}


def normalize_tools(raw: Any) -> dict[str, Any]:
    """Merge a (possibly partial or malformed) tool policy with the defaults.

    Example:
        >>> normalize_tools({"fs": {"enabled": False, "maxReadBytes": 0}})
        {'fs': {'enabled': False}, 'mcp': {'enabled': False, 'allowedServers': []}}

    """
    if not _is_object(raw):
        return default_tools()

    fs_raw = raw.get("fs") if _is_object(raw.get("fs")) else {}
    mcp_raw = raw.get("mcp") if _is_object(raw.get("mcp")) else {}

    fs: dict[str, Any] = {
        "enabled": fs_raw["enabled"] if isinstance(fs_raw.get("enabled"), bool) else True
    }
    for key in ("maxReadBytes", "maxWriteBytes"):
        limit = _positive_int(fs_raw.get(key))
        if limit is not None:
            fs[key] = limit

    servers = mcp_raw.get("allowedServers")
    allowed = [s for s in servers if isinstance(s, str) and s.strip()] if isinstance(servers, list) else []
    mcp = {
        "enabled": mcp_raw["enabled"] if isinstance(mcp_raw.get("enabled"), bool) else False,
        "allowedServers": allowed,
    }
    return {"fs": fs, "mcp": mcp}


def _legacy_agent(name: str, role: str, icon: str, agent_id: str) -> dict[str, Any]:
    return {
        "id": agent_id,
        "metadata": {"name": name, "title": name, "icon": icon},
        "persona": {
            "role": role or "Agent",
            "identity": role or "TBD",
            "communication_style": "direct",
            "principles": ["TBD"],
        },
        "tools": default_tools(),
    }


def _normalize_legacy(items: list[Any], icon: str) -> list[dict[str, Any]]:
    agents = []
    seen: set[str] = set()
    for index, item in enumerate(items):
        if not _is_object(item) or not _text(item.get("name")):
            logger.debug("Skipping legacy agent record %d without a name", index)
            continue
        name = _text(item["name"])
        agent_id = unique_agent_id(name, seen)
        seen.add(agent_id)
        agents.append(_legacy_agent(name, _text(item.get("role")), icon, agent_id))
    return agents


def _normalize_agent(
    agent: dict[str, Any], agent_id: str, icon: str, warnings: list[str]
) -> dict[str, Any]:
    metadata_raw = agent.get("metadata") if _is_object(agent.get("metadata")) else {}
    raw_name = _text(metadata_raw.get("name"))
    raw_title = _text(metadata_raw.get("title"))
    name = raw_name or raw_title or agent_id
    metadata: dict[str, Any] = {
        "name": name,
        "title": raw_title or raw_name or name,
        "icon": _text(metadata_raw.get("icon")) or icon,
    }
    for key in ("module", "description", "sourceId"):
        value = _text(metadata_raw.get(key))
        if value:
            metadata[key] = value

    persona_raw = agent.get("persona") if _is_object(agent.get("persona")) else {}
    role = _text(persona_raw.get("role")) or "Agent"
    persona = {
        "role": role,
        "identity": _text(persona_raw.get("identity")) or role or "TBD",
        "communication_style": _text(persona_raw.get("communication_style")) or "direct",
        "principles": _principles(persona_raw.get("principles")) or ["TBD"],
    }

    normalized: dict[str, Any] = {
        "id": agent_id,
        "metadata": metadata,
        "persona": persona,
        "tools": normalize_tools(agent.get("tools")),
    }

    critical_actions = _text_list(agent.get("critical_actions"))
    if critical_actions:
        normalized["critical_actions"] = critical_actions

    prompts = []
    raw_prompts = agent.get("prompts")
    for prompt in raw_prompts if isinstance(raw_prompts, list) else []:
        if not _is_object(prompt):
            continue
        prompt_id, content = _text(prompt.get("id")), _text(prompt.get("content"))
        if not prompt_id or not content:
            continue
        entry = {"id": prompt_id, "content": content}
        description = _text(prompt.get("description"))
        if description:
            entry["description"] = description
        prompts.append(entry)
    if prompts:
        normalized["prompts"] = prompts

    raw_menu = agent.get("menu")
    if isinstance(raw_menu, list):
        menu = [m for m in raw_menu if _is_object(m) and _text(m.get("description"))]
        if len(menu) != len(raw_menu):
            warnings.append(f"invalid menu items filtered: agentId={agent_id}")
        if menu:
            normalized["menu"] = menu

    for key in ("systemPrompt", "userPromptTemplate"):
        if isinstance(agent.get(key), str):
            normalized[key] = agent[key]
    for key in ("discussion", "webskip"):
        if isinstance(agent.get(key), bool):
            normalized[key] = agent[key]

    raw_knowledge = agent.get("conversational_knowledge")
    if isinstance(raw_knowledge, list):
        knowledge = [k for k in raw_knowledge if _is_object(k)]
        if len(knowledge) != len(raw_knowledge):
            warnings.append(f"invalid conversational_knowledge items filtered: agentId={agent_id}")
        if knowledge:
            normalized["conversational_knowledge"] = knowledge

    return normalized


def normalize_agents(parsed: Any, mode: AgentParseMode = AgentParseMode.STRICT) -> AgentsNormalization:
    """Normalize parsed agents JSON (legacy array or v1.1 object).

    Args:
        parsed: Result of ``json.loads`` on the raw agents text.
        mode: STRICT makes record problems fatal, LENIENT filters them.

    Returns:
        AgentsNormalization with canonical agents in input order.

    """
    icon = get_config().default_agent_icon
    warnings: list[str] = []
    problems: list[str] = []

    if isinstance(parsed, list):
        return AgentsNormalization(agents=_normalize_legacy(parsed, icon))

    if not _is_object(parsed):
        message = "agents JSON must be a v1.1 manifest object or a legacy array"
        if mode is AgentParseMode.STRICT:
            return AgentsNormalization(agents=[], errors=[message], problems=[message])
        return AgentsNormalization(agents=[], warnings=[message], problems=[message])

    raw_version = _text(parsed.get("schemaVersion"))
    if raw_version and not _SCHEMA_VERSION_RE.match(raw_version):
        warnings.append(f'schemaVersion is invalid, falling back to "1.1": {raw_version}')
    elif raw_version and raw_version != "1.1":
        warnings.append(f'schemaVersion normalized to "1.1": {raw_version}')

    agents: list[dict[str, Any]] = []
    seen: set[str] = set()
    raw_agents = parsed.get("agents") if isinstance(parsed.get("agents"), list) else []
    for index, item in enumerate(raw_agents):
        if not _is_object(item):
            problems.append(f"agents[{index}] is not an object")
            continue
        agent_id = _text(item.get("id"))
        if not agent_id:
            problems.append(f"agents[{index}].id must not be empty")
            continue
        if not is_valid_id(agent_id):
            problems.append(f"agents[{index}].id is invalid: {agent_id}")
            continue
        if agent_id in seen:
            problems.append(f"duplicate agent id: {agent_id}")
            continue
        seen.add(agent_id)
        agents.append(_normalize_agent(item, agent_id, icon, warnings))

    if mode is AgentParseMode.STRICT:
        return AgentsNormalization(agents=agents, warnings=warnings, errors=list(problems), problems=problems)
    if problems:
        logger.warning("Filtered %d invalid agent record(s)", len(problems))
    return AgentsNormalization(agents=agents, warnings=warnings + problems, problems=problems)


def _manifest(agents: list[dict[str, Any]]) -> dict[str, Any]:
    return {"schemaVersion": get_config().schema_version, "agents": agents}


def validate_agents_manifest(value: Any) -> ValidationResult:
    """Validate a value against the agents.json schema."""
    violations = get_validator(DocumentKind.AGENTS_MANIFEST).check(value)
    return ValidationResult(ok=not violations, errors=format_violations(violations))


def format_agents_manifest(manifest: dict[str, Any]) -> str:
    """Serialize a manifest as canonical JSON (2-space indent, UTF-8 kept)."""
    return json.dumps(manifest, indent=2, ensure_ascii=False)


def build_agents_manifest(agents_json_raw: str | None) -> AgentsManifestBuildResult:
    """Build a schema-valid agents manifest from raw agents JSON.

    Args:
        agents_json_raw: Legacy array or v1.1 manifest, as JSON text.

    Returns:
        AgentsManifestBuildResult; manifest is None when anything is fatal.

    """
    trimmed = (agents_json_raw or "").strip()
    if not trimmed:
        return AgentsManifestBuildResult(manifest=None, errors=[NO_AGENTS_ERROR])

    try:
        parsed = json.loads(trimmed)
    except json.JSONDecodeError as e:
        return AgentsManifestBuildResult(
            manifest=None, errors=[f"agents JSON is invalid: {e.msg} (line {e.lineno}, column {e.colno})"]
        )

    normalized = normalize_agents(parsed, AgentParseMode.STRICT)
    errors = list(normalized.errors)
    if not normalized.agents:
        errors.append(NO_AGENTS_ERROR)
    if errors:
        return AgentsManifestBuildResult(manifest=None, warnings=normalized.warnings, errors=errors)

    manifest = _manifest(normalized.agents)
    validation = validate_agents_manifest(manifest)
    if not validation.ok:
        return AgentsManifestBuildResult(manifest=None, warnings=normalized.warnings, errors=validation.errors)

    logger.debug("Built agents manifest with %d agent(s)", len(normalized.agents))
    return AgentsManifestBuildResult(manifest=manifest, warnings=normalized.warnings)


def _list_item(agent: dict[str, Any]) -> AgentListItem:
    metadata, persona = agent["metadata"], agent["persona"]
    return AgentListItem(
        id=agent["id"],
        name=metadata["name"],
        title=metadata["title"],
        icon=metadata["icon"],
        role=persona["role"],
        identity=persona["identity"],
        communication_style=persona["communication_style"],
        principles=list(persona["principles"]),
    )


def list_agents_for_display(agents_json_raw: str | None) -> AgentListResult:
    """Parse agents JSON leniently for listing.

    Never fails: unparsable input yields an empty manifest and an error text,
    invalid records are dropped and summarized in ``error``.
    """
    empty = _manifest([])
    trimmed = (agents_json_raw or "").strip()
    if not trimmed:
        return AgentListResult(manifest=empty, agents=[])

    try:
        parsed = json.loads(trimmed)
    except json.JSONDecodeError:
        return AgentListResult(manifest=empty, agents=[], error="agents JSON could not be parsed (invalid JSON)")

    normalized = normalize_agents(parsed, AgentParseMode.LENIENT)
    manifest = _manifest(normalized.agents)
    items = [_list_item(a) for a in normalized.agents]

    error = None
    if normalized.problems:
        summary = "; ".join(normalized.problems[:_DISPLAY_ERROR_SAMPLE])
        extra = len(normalized.problems) - _DISPLAY_ERROR_SAMPLE
        suffix = f" ... ({len(normalized.problems)} in total)" if extra > 0 else ""
        error = f"agents JSON has data problems: {summary}{suffix}. Fix them before editing."
    return AgentListResult(manifest=manifest, agents=items, warnings=normalized.warnings, error=error)


def _graph_nodes(raw_graph_json: str) -> list[Any]:
    try:
        graph = json.loads(raw_graph_json or "")
    except json.JSONDecodeError:
        return []
    nodes = graph.get("nodes") if isinstance(graph, dict) else None
    return nodes if isinstance(nodes, list) else []


def _node_agent_id(node: Any) -> str:
    if not _is_object(node):
        return ""
    data = node.get("data")
    if _is_object(data) and isinstance(data.get("agentId"), str):
        return data["agentId"]
    return node["agentId"] if isinstance(node.get("agentId"), str) else ""


def find_agent_references(agent_id: str, workflows: Iterable[WorkflowExportInput]) -> list[AgentReference]:
    """Count, per workflow, the graph nodes bound to ``agent_id``.

    Workflows whose graph cannot be parsed are skipped.
    """
    refs = []
    for wf in workflows:
        count = sum(1 for node in _graph_nodes(wf.raw_graph_json) if _node_agent_id(node) == agent_id)
        if count:
            refs.append(AgentReference(workflow_id=str(wf.id), workflow_name=wf.name, count=count))
    return refs


def remove_agent(
    manifest: dict[str, Any], agent_id: str, workflows: Iterable[WorkflowExportInput] = ()
) -> AgentsManifestBuildResult:
    """Return a copy of ``manifest`` without ``agent_id``.

    Refuses when the agent is unknown, is the last one, or is still bound to
    workflow nodes.
    """
    agents = manifest.get("agents") if isinstance(manifest.get("agents"), list) else []
    if not any(_is_object(a) and a.get("id") == agent_id for a in agents):
        return AgentsManifestBuildResult(manifest=None, errors=[f"unknown agent id: {agent_id}"])
    if len(agents) <= 1:
        return AgentsManifestBuildResult(manifest=None, errors=["at least one agent must remain"])

    refs = find_agent_references(agent_id, workflows)
    if refs:
        summary = "; ".join(
            f"{r.workflow_name}(ID:{r.workflow_id}) x{r.count}" for r in refs[:_DISPLAY_ERROR_SAMPLE]
        )
        return AgentsManifestBuildResult(
            manifest=None,
            errors=[f"agent {agent_id} is referenced by workflow nodes: {summary}; unbind it first"],
        )

    remaining = [a for a in agents if not (_is_object(a) and a.get("id") == agent_id)]
    return AgentsManifestBuildResult(manifest={**manifest, "agents": remaining})
