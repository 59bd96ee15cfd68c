"""Tests for the export assembler."""

import json
from types import MappingProxyType
from typing import Any

import pytest
from conftest import CREATED_AT, make_workflow_input

from bmad_packager.assembler import assemble_export_files, export_filename, workflow_label
from bmad_packager.core.config import load_config
from bmad_packager.core.types import WorkflowExportInput
from bmad_packager.manifest import WorkflowListItem, build_package_manifest, format_package_manifest


class TestAssembleHappyPath:
    """Complete bundles."""

    def test_file_map(
        self, package_manifest_json: str, agents_json: str, workflow_input: WorkflowExportInput
    ) -> None:
        """Manifests, workflow documents and step files are all present."""
        result = assemble_export_files(
            "Demo Project", package_manifest_json, agents_json, [workflow_input], {"assets/guide.md": "# G\n"}
        )
        assert result.errors == []
        assert result.filename == "Demo Project.bmad"
        assert result.files_by_path is not None
        assert sorted(result.files_by_path) == [
            "agents.json",
            "assets/guide.md",
            "bmad.json",
            "workflows/1/steps/build.md",
            "workflows/1/steps/plan.md",
            "workflows/1/workflow.graph.json",
            "workflows/1/workflow.md",
        ]
        assert result.files_by_path["bmad.json"] == package_manifest_json
        assert result.files_by_path["agents.json"] == agents_json

    def test_graph_file_paths_prefixed(
        self, package_manifest_json: str, agents_json: str, workflow_input: WorkflowExportInput
    ) -> None:
        """Node files in the archived graph point inside the workflow folder."""
        result = assemble_export_files("Demo", package_manifest_json, agents_json, [workflow_input])
        assert result.files_by_path is not None
        graph = json.loads(result.files_by_path["workflows/1/workflow.graph.json"])
        assert graph["entryNodeId"] == "plan"
        assert {n["id"]: n["file"] for n in graph["nodes"]} == {
            "build": "workflows/1/steps/build.md",
            "plan": "workflows/1/steps/plan.md",
        }

    def test_read_only(
        self, package_manifest_json: str, agents_json: str, workflow_input: WorkflowExportInput
    ) -> None:
        """The file map cannot be modified."""
        result = assemble_export_files("Demo", package_manifest_json, agents_json, [workflow_input])
        assert isinstance(result.files_by_path, MappingProxyType)
        with pytest.raises(TypeError):
            result.files_by_path["extra.txt"] = "x"  # type: ignore[index]


class TestAssembleErrors:
    """Any error drops the whole file map."""

    def test_unknown_agent(self, package_manifest_json: str, agents_json: str, builder_graph: dict[str, Any]) -> None:
        """Nodes referencing a missing agent fail the export."""
        builder_graph["nodes"][0]["data"]["agentId"] = "ghost"
        wf = make_workflow_input(1, "Main", builder_graph)
        result = assemble_export_files("Demo", package_manifest_json, agents_json, [wf])
        assert result.files_by_path is None
        assert result.errors == ["workflow(Main,ID:1) references unknown agentId: ghost (nodeId=plan)"]

    def test_missing_step_file(
        self, package_manifest_json: str, agents_json: str, workflow_input: WorkflowExportInput
    ) -> None:
        """Every compiled node needs its step file."""
        steps = json.loads(workflow_input.step_files_json)
        del steps["steps/build.md"]
        wf = make_workflow_input(
            1, "Main", json.loads(workflow_input.raw_graph_json), step_files_json=json.dumps(steps)
        )
        result = assemble_export_files("Demo", package_manifest_json, agents_json, [wf])
        assert result.files_by_path is None
        assert result.errors == ["workflow(Main,ID:1) is missing step file: steps/build.md (nodeId=build)"]

    def test_missing_workflow_markdown(
        self, package_manifest_json: str, agents_json: str, builder_graph: dict[str, Any]
    ) -> None:
        """Workflows without workflow.md are rejected."""
        wf = make_workflow_input(1, "Main", builder_graph, workflow_markdown="  ")
        result = assemble_export_files("Demo", package_manifest_json, agents_json, [wf])
        assert result.errors == [
            "workflow(Main,ID:1) is missing workflowMd: save it in the editor to generate a v1.1 workflow.md"
        ]

    def test_bad_step_file_keys(
        self, package_manifest_json: str, agents_json: str, builder_graph: dict[str, Any]
    ) -> None:
        """Step file keys must live under steps/."""
        wf = make_workflow_input(
            1, "Main", builder_graph, step_files_json=json.dumps({"plan.md": "x", "steps/build.md": " "})
        )
        result = assemble_export_files("Demo", package_manifest_json, agents_json, [wf])
        assert "workflow(Main,ID:1) step file key must start with steps/: plan.md" in result.errors
        assert "workflow(Main,ID:1) step file is empty: steps/build.md" in result.errors

    def test_invalid_graph(self, package_manifest_json: str, agents_json: str, builder_graph: dict[str, Any]) -> None:
        """Compiler errors are reported with the workflow label."""
        wf = make_workflow_input(1, "Main", builder_graph, raw_graph_json="{")
        result = assemble_export_files("Demo", package_manifest_json, agents_json, [wf])
        assert result.errors == ["workflow(Main,ID:1).graphJson could not be parsed (invalid JSON)"]

    def test_errors_aggregated_across_workflows(self, agents_json: str, builder_graph: dict[str, Any]) -> None:
        """Problems in several workflows are all reported."""
        manifest = build_package_manifest(
            "Demo", [WorkflowListItem(id=1, name="A", is_default=True), WorkflowListItem(id=2, name="B")], CREATED_AT
        ).manifest
        assert manifest is not None
        first = make_workflow_input(1, "A", builder_graph, workflow_markdown="")
        second = make_workflow_input(2, "B", builder_graph, step_files_json="[]")
        result = assemble_export_files("Demo", format_package_manifest(manifest), agents_json, [first, second])
        assert len(result.errors) == 2
        assert result.errors[1] == "workflow(B,ID:2).stepFilesJson must be a JSON object"

    def test_entry_must_exist(self, agents_json: str, workflow_input: WorkflowExportInput) -> None:
        """bmad.json entry paths must be part of the bundle."""
        manifest = build_package_manifest("Demo", [WorkflowListItem(id=2, name="Two")], CREATED_AT).manifest
        assert manifest is not None
        result = assemble_export_files("Demo", format_package_manifest(manifest), agents_json, [workflow_input])
        assert result.errors == [
            "bundle is missing the file referenced by bmad.json entry: workflows/2/workflow.md",
            "bundle is missing the file referenced by bmad.json entry: workflows/2/workflow.graph.json",
        ]

    @pytest.mark.parametrize(
        ("manifest_json", "error"),
        [
            ("", "bmad.json is empty"),
            ("[]", "bmad.json must be a JSON object"),
            ("{}", "bmad.json entry is missing or invalid"),
            ('{"entry": {"workflow": "w.md"}}', "bmad.json entry.workflow/graph/agents is missing"),
        ],
    )
    def test_bad_package_manifest(self, agents_json: str, manifest_json: str, error: str) -> None:
        """Package manifest problems stop assembly early."""
        result = assemble_export_files("Demo", manifest_json, agents_json, [])
        assert result.errors == [error]

    def test_no_workflows(self, package_manifest_json: str, agents_json: str) -> None:
        """At least one workflow is required."""
        result = assemble_export_files("Demo", package_manifest_json, agents_json, [])
        assert result.errors == ["no workflows to export"]


class TestAssets:
    """Asset inclusion."""

    def test_outside_assets_skipped(
        self, package_manifest_json: str, agents_json: str, workflow_input: WorkflowExportInput
    ) -> None:
        """Paths outside assets/ are warned about and left out."""
        result = assemble_export_files(
            "Demo", package_manifest_json, agents_json, [workflow_input], {"notassets/x.txt": "x"}
        )
        assert result.errors == []
        assert result.warnings == ["skipping path outside assets/: notassets/x.txt"]
        assert result.files_by_path is not None
        assert "notassets/x.txt" not in result.files_by_path

    def test_unsafe_asset(
        self, package_manifest_json: str, agents_json: str, workflow_input: WorkflowExportInput
    ) -> None:
        """Traversal inside assets/ is an error."""
        result = assemble_export_files(
            "Demo", package_manifest_json, agents_json, [workflow_input], {"assets/../bmad.json": "{}"}
        )
        assert result.files_by_path is None
        assert result.errors == ["unsafe asset path: assets/../bmad.json"]


class TestNaming:
    """File names and labels."""

    def test_export_filename(self) -> None:
        """Project names are sanitized and get the archive extension."""
        assert export_filename('My: "Project"') == "My- -Project-.bmad"
        assert export_filename("") == "Untitled.bmad"

    def test_configured_extension(self) -> None:
        """The extension comes from configuration."""
        load_config({"archive_extension": "zip"})
        assert export_filename("Demo") == "Demo.zip"

    def test_workflow_label(self, workflow_input: WorkflowExportInput) -> None:
        """Labels fall back to the id when the name is blank."""
        assert workflow_label(workflow_input) == "workflow(Main,ID:1)"
        assert workflow_label(WorkflowExportInput(7, "", "", "", "")) == "workflow(7,ID:7)"
