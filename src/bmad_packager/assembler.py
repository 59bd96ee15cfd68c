"""Export assembler: builds the complete archive path -> content map.

The assembler combines the two manifests, the assets and every workflow's
Markdown, step files and compiled graph, and checks that everything refers
to something that exists:

- compiled node files point at step files present in the bundle
- node agent ids exist in agents.json
- bmad.json entry paths exist in the bundle

Errors are aggregated across all workflows. If there is any error, no file
map is returned at all.
"""

import json
import logging
from collections.abc import Mapping, Sequence
from types import MappingProxyType
from typing import Any

from bmad_packager.core.config import get_config
from bmad_packager.core.ids import (
    is_safe_zip_path,
    is_valid_id,
    normalize_zip_path,
    sanitize_filename,
    workflow_paths,
)
from bmad_packager.core.types import ExportFilesBuildResult, FileContent, WorkflowExportInput
from bmad_packager.graph.compiler import compile_workflow_graph

logger = logging.getLogger(__name__)

__all__ = ["WorkflowExportInput", "assemble_export_files", "export_filename", "workflow_label"]

PACKAGE_MANIFEST_PATH = "bmad.json"
AGENTS_MANIFEST_PATH = "agents.json"
ASSETS_PREFIX = "assets/"
STEPS_PREFIX = "steps/"


def export_filename(project_name: str) -> str:
    """Archive file name for a project: sanitized name plus extension."""
    config = get_config()
    base = sanitize_filename(
        project_name or "",
        fallback=config.untitled_name,
        max_length=config.max_filename_length,
    )
    return f"{base}{config.archive_extension}"


def workflow_label(workflow: WorkflowExportInput) -> str:
    """Prefix used in diagnostics, e.g. ``workflow(Main,ID:1)``."""
    return f"workflow({workflow.name or workflow.id},ID:{workflow.id})"


def _parse_json_object(raw: str | None, label: str, errors: list[str]) -> dict[str, Any] | None:
    trimmed = (raw or "").strip()
    if not trimmed:
        errors.append(f"{label} is empty")
        return None
    try:
        value = json.loads(trimmed)
    except json.JSONDecodeError:
        errors.append(f"{label} could not be parsed (invalid JSON)")
        return None
    if not isinstance(value, dict):
        errors.append(f"{label} must be a JSON object")
        return None
    return value


def _entry_paths(package_manifest: dict[str, Any], errors: list[str]) -> tuple[str, str, str] | None:
    entry = package_manifest.get("entry")
    if not isinstance(entry, dict):
        errors.append("bmad.json entry is missing or invalid")
        return None
    paths = tuple(
        entry[key].strip() if isinstance(entry.get(key), str) else "" for key in ("workflow", "graph", "agents")
    )
    if not all(paths):
        errors.append("bmad.json entry.workflow/graph/agents is missing")
        return None
    return paths


def _agent_ids(agents_manifest: dict[str, Any]) -> set[str]:
    agents = agents_manifest.get("agents")
    if not isinstance(agents, list):
        return set()
    return {
        a["id"] for a in agents if isinstance(a, dict) and isinstance(a.get("id"), str) and a["id"].strip()
    }


def _step_files(raw: str, label: str, errors: list[str]) -> dict[str, str] | None:
    parsed = _parse_json_object(raw, f"{label}.stepFilesJson", errors)
    if parsed is None:
        return None
    files = {}
    for key, content in parsed.items():
        if not isinstance(content, str):
            errors.append(f"{label}.stepFilesJson has non-text content: {key}")
            continue
        files[key] = content
    return files


def _graph_payload(raw: str, label: str, errors: list[str]) -> tuple[list[Any], list[Any]] | None:
    parsed = _parse_json_object(raw, f"{label}.graphJson", errors)
    if parsed is None:
        return None
    nodes = parsed.get("nodes") if isinstance(parsed.get("nodes"), list) else []
    edges = parsed.get("edges") if isinstance(parsed.get("edges"), list) else []
    if not nodes:
        errors.append(f"{label}.graphJson.nodes is empty")
        return None
    return nodes, edges


def _normalized_step_files(step_files: dict[str, str], label: str, errors: list[str]) -> dict[str, str]:
    normalized = {}
    for raw_key, content in step_files.items():
        key = normalize_zip_path(raw_key)
        if not key.startswith(STEPS_PREFIX):
            errors.append(f"{label} step file key must start with {STEPS_PREFIX}: {key}")
            continue
        if not is_safe_zip_path(key):
            errors.append(f"{label} step file key is unsafe: {key}")
            continue
        if not content.strip():
            errors.append(f"{label} step file is empty: {key}")
            continue
        normalized[key] = content
    return normalized


def _add_workflow(
    wf: WorkflowExportInput,
    agent_ids: set[str],
    files: dict[str, FileContent],
    warnings: list[str],
    errors: list[str],
) -> None:
    label = workflow_label(wf)
    workflow_id = str(wf.id).strip()
    if not is_valid_id(workflow_id):
        errors.append(f"{label} has an invalid workflow id: {workflow_id}")
        return

    if not (wf.workflow_markdown or "").strip():
        errors.append(f"{label} is missing workflowMd: save it in the editor to generate a v1.1 workflow.md")
        return
    md_path, graph_path = workflow_paths(workflow_id)
    files[md_path] = wf.workflow_markdown

    step_files = _step_files(wf.step_files_json, label, errors)
    payload = _graph_payload(wf.raw_graph_json, label, errors)
    if step_files is None or payload is None:
        return

    steps = _normalized_step_files(step_files, label, errors)
    base = f"workflows/{workflow_id}"
    for key, content in steps.items():
        files[f"{base}/{key}"] = content

    build = compile_workflow_graph(*payload)
    if build.graph is None:
        errors.append(f"{label} cannot build workflow.graph.json: {'; '.join(build.errors)}")
        return
    warnings.extend(f"{label}: {w}" for w in build.warnings)

    nodes = []
    for node in build.graph["nodes"]:
        step_file = normalize_zip_path(node["file"])
        if not step_file.startswith(STEPS_PREFIX) or not is_safe_zip_path(step_file):
            errors.append(f"{label} node file is invalid: {node['id']}:{step_file}")
        elif step_file not in steps:
            errors.append(f"{label} is missing step file: {step_file} (nodeId={node['id']})")

        agent_id = node.get("agentId", "").strip()
        if agent_id and agent_id not in agent_ids:
            errors.append(f"{label} references unknown agentId: {agent_id} (nodeId={node['id']})")

        nodes.append({**node, "file": f"{base}/{step_file}"})

    files[graph_path] = json.dumps({**build.graph, "nodes": nodes}, indent=2, ensure_ascii=False)


def assemble_export_files(
    project_name: str,
    package_manifest_json: str,
    agent_manifest_json: str,
    workflows: Sequence[WorkflowExportInput],
    assets: Mapping[str, FileContent] | None = None,
) -> ExportFilesBuildResult:
    """Assemble every file of a .bmad bundle.

    Args:
        project_name: Used for the archive file name.
        package_manifest_json: bmad.json text, copied verbatim.
        agent_manifest_json: agents.json text, copied verbatim.
        workflows: All workflows to export.
        assets: Optional archive path -> content for ``assets/**``.

    Returns:
        ExportFilesBuildResult with a read-only file map, or None on any error.

    """
    filename = export_filename(project_name)
    warnings: list[str] = []
    errors: list[str] = []

    def failed() -> ExportFilesBuildResult:
        return ExportFilesBuildResult(filename=filename, files_by_path=None, warnings=warnings, errors=errors)

    package_manifest = _parse_json_object(package_manifest_json, PACKAGE_MANIFEST_PATH, errors)
    agents_manifest = _parse_json_object(agent_manifest_json, AGENTS_MANIFEST_PATH, errors)
    if package_manifest is None or agents_manifest is None:
        return failed()

    entry_paths = _entry_paths(package_manifest, errors)
    if entry_paths is None:
        return failed()

    if not workflows:
        errors.append("no workflows to export")
        return failed()

    agent_ids = _agent_ids(agents_manifest)
    files: dict[str, FileContent] = {
        PACKAGE_MANIFEST_PATH: package_manifest_json,
        AGENTS_MANIFEST_PATH: agent_manifest_json,
    }

    for raw_path, content in (assets or {}).items():
        path = normalize_zip_path(raw_path)
        if not path.startswith(ASSETS_PREFIX):
            warnings.append(f"skipping path outside {ASSETS_PREFIX}: {path}")
            continue
        if not is_safe_zip_path(path):
            errors.append(f"unsafe asset path: {path}")
            continue
        files[path] = content

    for wf in workflows:
        _add_workflow(wf, agent_ids, files, warnings, errors)

    if errors:
        return failed()

    for path in (normalize_zip_path(p) for p in entry_paths):
        if path not in files:
            errors.append(f"bundle is missing the file referenced by bmad.json entry: {path}")
    if errors:
        return failed()

    logger.debug("Assembled %s with %d file(s)", filename, len(files))
    return ExportFilesBuildResult(
        filename=filename, files_by_path=MappingProxyType(files), warnings=warnings
    )
