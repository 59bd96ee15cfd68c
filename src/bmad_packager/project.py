"""Project sources and end-to-end export.

A project source is the persisted project payload: name, agents JSON, assets
JSON and, per workflow, the stored workflow.md, builder graph and step files.
It can be written as YAML or JSON with either snake_case or camelCase keys.

Export pipeline:
    agents.json builder -> bmad.json builder -> legacy migration
    -> assembler -> bundle validator -> zip
"""

import json
import logging
from datetime import UTC, date, datetime
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from bmad_packager.agents import build_agents_manifest, format_agents_manifest, list_agents_for_display
from bmad_packager.archive import build_zip_bundle
from bmad_packager.assembler import export_filename
from bmad_packager.assets import parse_assets_json
from bmad_packager.core.exceptions import ProjectLoadError
from bmad_packager.core.types import WorkflowExportInput, ZipBundleBuildResult
from bmad_packager.graph.documents import (
    has_legacy_step_files,
    is_v11_workflow_markdown,
    parse_workflow_variables,
    render_step_files,
    render_workflow_markdown,
)
from bmad_packager.graph.migration import migrate_legacy_graph
from bmad_packager.manifest import WorkflowListItem, build_package_manifest, format_package_manifest

logger = logging.getLogger(__name__)


def _json_default(value: Any) -> Any:
    """YAML dates and timestamps are stored as ISO text."""
    if isinstance(value, date):
        return value.isoformat()
    raise ValueError(f"value of type {type(value).__name__} cannot be stored as JSON")


def _json_text(v: Any) -> str:
    """Stored JSON blobs may be inlined as YAML/JSON structures."""
    if v is None:
        return ""
    if isinstance(v, str):
        return v
    try:
        return json.dumps(v, ensure_ascii=False, default=_json_default)
    except TypeError as e:
        # pydantic only wraps ValueError and AssertionError
        raise ValueError(str(e)) from e


class ProjectWorkflow(BaseModel):
    """One workflow of a project source.

    Attributes:
        id: Workflow id.
        name: Display name.
        is_default: Marks the package entry workflow.
        workflow_md: Stored workflow.md text.
        graph_json: Stored builder graph JSON.
        step_files_json: Stored ``steps/<node>.md`` map as JSON.

    """

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    id: str | int
    name: str = ""
    is_default: bool = Field(default=False, alias="isDefault")
    workflow_md: str = Field(default="", alias="workflowMd")
    graph_json: str = Field(default="", alias="graphJson")
    step_files_json: str = Field(default="", alias="stepFilesJson")

    @field_validator("graph_json", "step_files_json", mode="before")
    @classmethod
    def inline_to_text(cls, v: Any) -> str:
        """Accept inlined objects as well as JSON text."""
        return _json_text(v)

    @field_validator("workflow_md", "name", mode="before")
    @classmethod
    def coerce_none_to_empty(cls, v: Any) -> Any:
        """YAML parses empty keys as None."""
        return "" if v is None else v


class ProjectSource(BaseModel):
    """Everything needed to export one project."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    name: str = ""
    version: str | None = None
    created_at: str | None = Field(default=None, alias="createdAt")
    agents_json: str = Field(default="", alias="agentsJson")
    assets_json: str = Field(default="", alias="assetsJson")
    workflows: list[ProjectWorkflow] = Field(default_factory=list)

    @field_validator("agents_json", "assets_json", mode="before")
    @classmethod
    def inline_to_text(cls, v: Any) -> str:
        """Accept inlined objects as well as JSON text."""
        return _json_text(v)

    @field_validator("created_at", mode="before")
    @classmethod
    def datetime_to_iso(cls, v: Any) -> Any:
        """YAML turns unquoted timestamps into datetime objects; naive ones are UTC."""
        if isinstance(v, datetime):
            return (v if v.tzinfo else v.replace(tzinfo=UTC)).isoformat()
        return v


def load_project_source(path: Path) -> ProjectSource:
    """Read a project source from a YAML or JSON file.

    Raises:
        ProjectLoadError: If the file is missing, unparsable, or invalid.

    """
    if not path.exists():
        raise ProjectLoadError(f"Project file not found: {path}", path=str(path))
    try:
        content = path.read_text(encoding="utf-8")
    except OSError as e:
        raise ProjectLoadError(f"Cannot read project file: {path}\n  Error: {e}", path=str(path)) from e

    try:
        if path.suffix.lower() == ".json":
            data = json.loads(content)
        else:
            data = yaml.safe_load(content)
    except json.JSONDecodeError as e:
        raise ProjectLoadError(
            f"Invalid JSON in {path}:\n  Line {e.lineno}, column {e.colno}: {e.msg}", path=str(path)
        ) from e
    except yaml.YAMLError as e:
        line_info = ""
        mark = getattr(e, "problem_mark", None)
        if mark is not None:
            line_info = f"\n  Line {mark.line + 1}, column {mark.column + 1}"
        raise ProjectLoadError(f"Invalid YAML in {path}:{line_info}\n  {e}", path=str(path)) from e

    if not isinstance(data, dict):
        raise ProjectLoadError(
            f"Invalid project file {path}:\n  Root element must be a mapping, got {type(data).__name__}",
            path=str(path),
        )
    try:
        return ProjectSource.model_validate(data)
    except ValidationError as e:
        raise ProjectLoadError(f"Invalid project file {path}:\n{e}", path=str(path)) from e


def _now_iso() -> str:
    return datetime.now(UTC).isoformat(timespec="seconds").replace("+00:00", "Z")


def _prepare_workflow(
    wf: ProjectWorkflow, agents: list[Any], render_documents: bool, warnings: list[str]
) -> WorkflowExportInput:
    migration = migrate_legacy_graph(wf.graph_json, agents)
    graph_json = wf.graph_json
    if migration.error is None and graph_json.strip():
        graph_json = json.dumps(migration.graph, ensure_ascii=False)
    if migration.migrated_agent_count:
        warnings.append(
            f"workflow {wf.id}: migrated {migration.migrated_agent_count} legacy agent reference(s) to agentId"
        )
    if migration.unmapped_agent_refs:
        warnings.append(f"workflow {wf.id}: unmapped legacy agent references: {', '.join(migration.unmapped_agent_refs)}")

    workflow_md, step_files_json = wf.workflow_md, wf.step_files_json
    try:
        stored_steps = json.loads(step_files_json) if step_files_json.strip() else {}
    except json.JSONDecodeError:
        stored_steps = None
    legacy = bool(workflow_md.strip()) and (
        not is_v11_workflow_markdown(workflow_md)
        or (isinstance(stored_steps, dict) and has_legacy_step_files(stored_steps))
    )
    if migration.error is None and (render_documents or legacy):
        if legacy:
            warnings.append(f"workflow {wf.id}: legacy workflow.md/step files upgraded to v1.1")
        nodes, edges = migration.graph["nodes"], migration.graph["edges"]
        variables = parse_workflow_variables(workflow_md)
        workflow_md = render_workflow_markdown(wf.name, nodes, edges, variables)
        step_files_json = json.dumps(render_step_files(nodes, edges), ensure_ascii=False)

    return WorkflowExportInput(
        id=wf.id,
        name=wf.name,
        workflow_markdown=workflow_md,
        raw_graph_json=graph_json,
        step_files_json=step_files_json,
    )


def export_project(
    source: ProjectSource, created_at: str | None = None, render_documents: bool = False
) -> ZipBundleBuildResult:
    """Run the whole export pipeline for a project.

    Args:
        source: Loaded project source.
        created_at: Overrides the creation timestamp (default: source value or now).
        render_documents: Regenerate workflow.md and step files from the graph
            instead of using the stored ones.

    Returns:
        ZipBundleBuildResult with the archive bytes, or the aggregated errors.

    """
    filename = export_filename(source.name)
    warnings: list[str] = []

    agents_build = build_agents_manifest(source.agents_json)
    warnings.extend(f"agents.json: {w}" for w in agents_build.warnings)
    if agents_build.manifest is None:
        return ZipBundleBuildResult(
            filename=filename,
            zip_bytes=None,
            warnings=warnings,
            errors=[f"agents.json: {e}" for e in agents_build.errors],
        )

    manifest_build = build_package_manifest(
        source.name,
        [WorkflowListItem(id=wf.id, name=wf.name, is_default=wf.is_default) for wf in source.workflows],
        created_at or source.created_at or _now_iso(),
        source.version,
    )
    warnings.extend(f"bmad.json: {w}" for w in manifest_build.warnings)
    if manifest_build.manifest is None:
        return ZipBundleBuildResult(
            filename=filename,
            zip_bytes=None,
            warnings=warnings,
            errors=[f"bmad.json: {e}" for e in manifest_build.errors],
        )

    assets = parse_assets_json(source.assets_json)
    if assets.error:
        return ZipBundleBuildResult(filename=filename, zip_bytes=None, warnings=warnings, errors=[assets.error])

    agents = list_agents_for_display(source.agents_json).agents
    inputs = [_prepare_workflow(wf, agents, render_documents, warnings) for wf in source.workflows]

    result = build_zip_bundle(
        source.name,
        format_package_manifest(manifest_build.manifest),
        format_agents_manifest(agents_build.manifest),
        inputs,
        assets.mapping,
    )
    logger.info("Export of %s finished: %s", filename, "ok" if result.zip_bytes else "failed")
    return ZipBundleBuildResult(
        filename=result.filename,
        zip_bytes=result.zip_bytes,
        warnings=warnings + result.warnings,
        errors=result.errors,
    )
