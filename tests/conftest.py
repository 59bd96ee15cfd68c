"""Pytest configuration and fixtures for bmad-packager tests."""

import json
from typing import Any

import pytest

from bmad_packager.core.types import WorkflowExportInput
from bmad_packager.graph.documents import render_step_files, render_workflow_markdown
from bmad_packager.manifest import WorkflowListItem, build_package_manifest, format_package_manifest

CREATED_AT = "2026-01-02T03:04:05Z"


@pytest.fixture(autouse=True)
def reset_singletons():
    """Reset config singleton and validator cache before and after each test."""
    from bmad_packager.core.config import _reset_config
    from bmad_packager.export.validators import clear_validator_cache

    _reset_config()
    clear_validator_cache()
    yield
    _reset_config()
    clear_validator_cache()


@pytest.fixture
def agents_manifest() -> dict[str, Any]:
    """A valid v1.1 agents manifest with two agents."""
    return {
        "schemaVersion": "1.1",
        "agents": [
            {
                "id": "pm",
                "metadata": {"name": "John", "title": "Product Manager", "icon": "📋"},
                "persona": {
                    "role": "Product Manager",
                    "identity": "Turns ideas into requirements",
                    "communication_style": "direct",
                    "principles": ["Ask why", "Ship small"],
                },
            },
            {
                "id": "dev",
                "metadata": {"name": "Amelia", "title": "Developer", "icon": "💻"},
                "persona": {
                    "role": "Developer",
                    "identity": "Writes the code",
                    "communication_style": "terse",
                    "principles": ["Tests first"],
                },
            },
        ],
    }


@pytest.fixture
def agents_json(agents_manifest: dict[str, Any]) -> str:
    """Raw agents JSON text."""
    return json.dumps(agents_manifest)


@pytest.fixture
def builder_graph() -> dict[str, Any]:
    """Two-step builder graph: plan (pm) -> build (dev)."""
    return {
        "nodes": [
            {"id": "plan", "type": "step", "data": {"title": "Plan", "agentId": "pm"}},
            {"id": "build", "type": "end", "data": {"title": "Build", "agentId": "dev"}},
        ],
        "edges": [{"id": "e1", "source": "plan", "target": "build"}],
    }


def make_workflow_input(
    wf_id: str | int, name: str, graph: dict[str, Any], **overrides: Any
) -> WorkflowExportInput:
    """Build a WorkflowExportInput whose documents are rendered from ``graph``."""
    nodes, edges = graph["nodes"], graph["edges"]
    values = {
        "id": wf_id,
        "name": name,
        "workflow_markdown": render_workflow_markdown(name, nodes, edges),
        "raw_graph_json": json.dumps(graph),
        "step_files_json": json.dumps(render_step_files(nodes, edges)),
    }
    values.update(overrides)
    return WorkflowExportInput(**values)


@pytest.fixture
def workflow_input(builder_graph: dict[str, Any]) -> WorkflowExportInput:
    """Workflow 1 ("Main") built from builder_graph."""
    return make_workflow_input(1, "Main", builder_graph)


@pytest.fixture
def package_manifest_json() -> str:
    """bmad.json text for a project with workflow 1 as default."""
    result = build_package_manifest(
        "Demo Project", [WorkflowListItem(id=1, name="Main", is_default=True)], CREATED_AT
    )
    assert result.manifest is not None
    return format_package_manifest(result.manifest)


@pytest.fixture
def project_data(agents_json: str, builder_graph: dict[str, Any]) -> dict[str, Any]:
    """Project source payload (camelCase, inlined graph) for one workflow."""
    nodes, edges = builder_graph["nodes"], builder_graph["edges"]
    return {
        "name": "Demo Project",
        "version": "1.0.0",
        "createdAt": CREATED_AT,
        "agentsJson": agents_json,
        "assetsJson": {"assets/guide.md": "# Guide\n"},
        "workflows": [
            {
                "id": 1,
                "name": "Main",
                "isDefault": True,
                "workflowMd": render_workflow_markdown("Main", nodes, edges),
                "graphJson": builder_graph,
                "stepFilesJson": render_step_files(nodes, edges),
            }
        ],
    }
