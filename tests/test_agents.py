"""Tests for the agents.json builder, listing and agent removal."""

import json
from typing import Any

import pytest

from bmad_packager.agents import (
    NO_AGENTS_ERROR,
    AgentParseMode,
    build_agents_manifest,
    default_tools,
    find_agent_references,
    format_agents_manifest,
    list_agents_for_display,
    normalize_agents,
    normalize_tools,
    remove_agent,
    validate_agents_manifest,
)
from bmad_packager.core.config import load_config
from bmad_packager.core.types import WorkflowExportInput


def _workflow(wf_id: str, name: str, nodes: list[dict[str, Any]]) -> WorkflowExportInput:
    return WorkflowExportInput(
        id=wf_id,
        name=name,
        workflow_markdown="",
        raw_graph_json=json.dumps({"nodes": nodes, "edges": []}),
        step_files_json="{}",
    )


class TestBuildAgentsManifest:
    """Strict builder used by export."""

    def test_valid_manifest(self, agents_json: str) -> None:
        """A valid manifest passes through with defaults filled in."""
        result = build_agents_manifest(agents_json)
        assert result.errors == []
        assert result.manifest is not None
        assert [a["id"] for a in result.manifest["agents"]] == ["pm", "dev"]
        assert result.manifest["agents"][0]["tools"] == default_tools()

    @pytest.mark.parametrize("raw", [None, "", "   "])
    def test_empty_input(self, raw: str | None) -> None:
        """Empty input means no agents."""
        result = build_agents_manifest(raw)
        assert result.manifest is None
        assert result.errors == [NO_AGENTS_ERROR]

    def test_invalid_json(self) -> None:
        """Syntax errors are reported, not raised."""
        result = build_agents_manifest("{not json")
        assert result.manifest is None
        assert result.errors[0].startswith("agents JSON is invalid:")

    def test_empty_agent_list(self) -> None:
        """A manifest without agents is an error."""
        result = build_agents_manifest('{"schemaVersion": "1.1", "agents": []}')
        assert result.errors == [NO_AGENTS_ERROR]

    def test_duplicate_id_is_fatal(self, agents_manifest: dict[str, Any]) -> None:
        """Duplicate ids fail the strict build."""
        agents_manifest["agents"][1]["id"] = "pm"
        result = build_agents_manifest(json.dumps(agents_manifest))
        assert result.manifest is None
        assert "duplicate agent id: pm" in result.errors

    def test_invalid_id_is_fatal(self, agents_manifest: dict[str, Any]) -> None:
        """Ids breaking the id pattern fail the strict build."""
        agents_manifest["agents"][0]["id"] = "-pm"
        result = build_agents_manifest(json.dumps(agents_manifest))
        assert result.errors == ["agents[0].id is invalid: -pm"]

    def test_legacy_array(self) -> None:
        """Legacy {name, role} arrays are upgraded with slug ids."""
        raw = json.dumps([{"name": "Product Owner", "role": "PO"}, {"name": "product owner"}, {"role": "x"}])
        result = build_agents_manifest(raw)
        assert result.manifest is not None
        agents = result.manifest["agents"]
        assert [a["id"] for a in agents] == ["product-owner", "product-owner-2"]
        assert agents[0]["persona"]["role"] == "PO"
        assert agents[1]["persona"]["role"] == "Agent"
        assert validate_agents_manifest(result.manifest).ok

    def test_defaults_filled(self) -> None:
        """Missing metadata and persona fields get schema-valid defaults."""
        result = build_agents_manifest('{"agents": [{"id": "qa"}]}')
        assert result.manifest is not None
        [agent] = result.manifest["agents"]
        assert agent["metadata"] == {"name": "qa", "title": "qa", "icon": "\U0001f9e9"}
        assert agent["persona"] == {
            "role": "Agent",
            "identity": "Agent",
            "communication_style": "direct",
            "principles": ["TBD"],
        }

    def test_configured_icon(self) -> None:
        """The placeholder icon comes from the config."""
        load_config({"default_agent_icon": "*"})
        result = build_agents_manifest('{"agents": [{"id": "qa"}]}')
        assert result.manifest is not None
        assert result.manifest["agents"][0]["metadata"]["icon"] == "*"

    def test_principles_from_text(self) -> None:
        """Multi-line principle text is split into a list."""
        raw = json.dumps({"agents": [{"id": "qa", "persona": {"principles": "One\n\n Two \n"}}]})
        result = build_agents_manifest(raw)
        assert result.manifest is not None
        assert result.manifest["agents"][0]["persona"]["principles"] == ["One", "Two"]

    def test_schema_version_warning(self) -> None:
        """Odd schema versions are normalized with a warning."""
        result = build_agents_manifest('{"schemaVersion": "1.1.3", "agents": [{"id": "qa"}]}')
        assert result.manifest is not None
        assert result.manifest["schemaVersion"] == "1.1"
        assert result.warnings == ['schemaVersion normalized to "1.1": 1.1.3']

    def test_invalid_menu_items_filtered(self) -> None:
        """Menu items without a description are dropped with a warning."""
        raw = json.dumps({"agents": [{"id": "qa", "menu": [{"description": "Run"}, {"trigger": "x"}]}]})
        result = build_agents_manifest(raw)
        assert result.manifest is not None
        assert result.manifest["agents"][0]["menu"] == [{"description": "Run"}]
        assert "invalid menu items filtered: agentId=qa" in result.warnings

    def test_unknown_fields_dropped(self) -> None:
        """Fields outside the schema do not break the manifest."""
        raw = json.dumps({"agents": [{"id": "qa", "color": "red", "metadata": {"name": "Q", "x": 1}}]})
        result = build_agents_manifest(raw)
        assert result.manifest is not None
        assert "color" not in result.manifest["agents"][0]
        assert validate_agents_manifest(result.manifest).ok


class TestNormalizeAgents:
    """The shared strict/lenient normalization."""

    def _raw(self) -> dict[str, Any]:
        return {"agents": [{"id": "a"}, "oops", {"id": ""}, {"id": "a"}, {"id": "b"}]}

    def test_strict_reports_errors(self) -> None:
        """Strict mode turns record problems into errors."""
        result = normalize_agents(self._raw(), AgentParseMode.STRICT)
        assert result.errors == [
            "agents[1] is not an object",
            "agents[2].id must not be empty",
            "duplicate agent id: a",
        ]

    def test_lenient_filters(self) -> None:
        """Lenient mode keeps the valid agents and warns about the rest."""
        result = normalize_agents(self._raw(), AgentParseMode.LENIENT)
        assert result.errors == []
        assert [a["id"] for a in result.agents] == ["a", "b"]
        assert "duplicate agent id: a" in result.warnings
        assert len(result.problems) == 3

    def test_same_output_for_clean_input(self, agents_manifest: dict[str, Any]) -> None:
        """Both modes agree on clean input."""
        strict = normalize_agents(agents_manifest, AgentParseMode.STRICT)
        lenient = normalize_agents(agents_manifest, AgentParseMode.LENIENT)
        assert strict.agents == lenient.agents

    def test_scalar_input(self) -> None:
        """Scalars are neither a manifest nor a legacy array."""
        assert normalize_agents(42, AgentParseMode.STRICT).errors
        assert normalize_agents(42, AgentParseMode.LENIENT).errors == []


class TestNormalizeTools:
    """Tool policy defaults."""

    def test_non_object(self) -> None:
        """Anything but an object gives the defaults."""
        assert normalize_tools("all") == default_tools()

    def test_limits(self) -> None:
        """Only positive integer byte limits survive."""
        tools = normalize_tools({"fs": {"enabled": False, "maxReadBytes": 10, "maxWriteBytes": True}})
        assert tools["fs"] == {"enabled": False, "maxReadBytes": 10}

    def test_mcp_servers(self) -> None:
        """Blank and non-string servers are dropped."""
        tools = normalize_tools({"mcp": {"enabled": True, "allowedServers": ["git", "", 3]}})
        assert tools["mcp"] == {"enabled": True, "allowedServers": ["git"]}


class TestListAgentsForDisplay:
    """Lenient listing for editors."""

    def test_lists_agents(self, agents_json: str) -> None:
        """Flat items mirror the manifest."""
        result = list_agents_for_display(agents_json)
        assert result.error is None
        assert [(a.id, a.name, a.title) for a in result.agents] == [
            ("pm", "John", "Product Manager"),
            ("dev", "Amelia", "Developer"),
        ]

    def test_invalid_json(self) -> None:
        """Unparsable input gives an empty listing and an error."""
        result = list_agents_for_display("[")
        assert result.agents == []
        assert result.manifest["agents"] == []
        assert result.error == "agents JSON could not be parsed (invalid JSON)"

    def test_problem_summary(self) -> None:
        """Record problems are summarized, capped at three."""
        raw = json.dumps({"agents": [1, 2, 3, 4, {"id": "ok"}]})
        result = list_agents_for_display(raw)
        assert [a.id for a in result.agents] == ["ok"]
        assert result.error == (
            "agents JSON has data problems: agents[0] is not an object; "
            "agents[1] is not an object; agents[2] is not an object ... (4 in total). "
            "Fix them before editing."
        )

    def test_empty(self) -> None:
        """Empty input lists nothing without an error."""
        result = list_agents_for_display("")
        assert result.agents == []
        assert result.error is None


class TestRemoveAgent:
    """Deleting agents that may still be bound to nodes."""

    def test_removes_unreferenced(self, agents_manifest: dict[str, Any]) -> None:
        """An unreferenced agent is removed from a copy."""
        result = remove_agent(agents_manifest, "dev")
        assert result.manifest is not None
        assert [a["id"] for a in result.manifest["agents"]] == ["pm"]
        assert len(agents_manifest["agents"]) == 2

    def test_unknown(self, agents_manifest: dict[str, Any]) -> None:
        """Unknown ids are refused."""
        assert remove_agent(agents_manifest, "ghost").errors == ["unknown agent id: ghost"]

    def test_last_agent(self, agents_manifest: dict[str, Any]) -> None:
        """The last agent cannot be removed."""
        agents_manifest["agents"] = agents_manifest["agents"][:1]
        assert remove_agent(agents_manifest, "pm").errors == ["at least one agent must remain"]

    def test_referenced(self, agents_manifest: dict[str, Any]) -> None:
        """Agents bound to nodes are refused with a usage summary."""
        workflows = [
            _workflow("1", "Main", [{"id": "a", "data": {"agentId": "dev"}}, {"id": "b", "agentId": "dev"}]),
            _workflow("2", "Other", [{"id": "c", "data": {"agentId": "pm"}}]),
        ]
        result = remove_agent(agents_manifest, "dev", workflows)
        assert result.manifest is None
        assert result.errors == ["agent dev is referenced by workflow nodes: Main(ID:1) x2; unbind it first"]

    def test_find_references_skips_bad_graphs(self) -> None:
        """Unparsable graphs count as no references."""
        broken = WorkflowExportInput(
            id=3, name="Broken", workflow_markdown="", raw_graph_json="{", step_files_json=""
        )
        assert find_agent_references("pm", [broken]) == []


def test_format_agents_manifest_keeps_unicode(agents_manifest: dict[str, Any]) -> None:
    """Icons are written as UTF-8, not escaped."""
    text = format_agents_manifest(agents_manifest)
    assert "📋" in text
    assert text.startswith('{\n  "schemaVersion"')
