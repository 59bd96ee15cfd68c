"""Result types shared by the export pipeline.

Every stage returns one of these instead of raising:
- AgentsManifestBuildResult: agents.json builder output
- PackageManifestBuildResult: bmad.json builder output
- WorkflowGraphBuildResult: graph compiler output
- ExportFilesBuildResult: assembled path -> content map
- ZipBundleBuildResult: archive bytes
- ValidationResult: plain schema validation outcome
- WorkflowExportInput: per-workflow input of the assembler

Presence of any error forces the payload field to None.
"""

from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

FileContent = str | bytes


@dataclass(frozen=True)
class AgentsManifestBuildResult:
    """Outcome of normalizing raw agents JSON into a v1.1 agents manifest.

    Attributes:
        manifest: The canonical manifest, or None if any error occurred.
        warnings: Non-fatal normalization notes.
        errors: Fatal problems; non-empty implies manifest is None.

    """

    manifest: dict[str, Any] | None
    warnings: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class PackageManifestBuildResult:
    """Outcome of deriving bmad.json from a workflow list."""

    manifest: dict[str, Any] | None
    warnings: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class WorkflowGraphBuildResult:
    """Outcome of compiling a builder graph into workflow.graph.json."""

    graph: dict[str, Any] | None
    warnings: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class ExportFilesBuildResult:
    """Outcome of assembling an export bundle.

    Attributes:
        filename: Sanitized archive file name (always set, even on failure).
        files_by_path: Read-only archive path -> content map, or None.
        warnings: Non-fatal notes (skipped assets, compiler warnings).
        errors: Fatal problems collected across all workflows.

    """

    filename: str
    files_by_path: Mapping[str, FileContent] | None
    warnings: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class ZipBundleBuildResult:
    """Outcome of producing archive bytes for a project."""

    filename: str
    zip_bytes: bytes | None
    warnings: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class ValidationResult:
    """Outcome of validating a single document against its schema."""

    ok: bool
    errors: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class WorkflowExportInput:
    """One workflow as handed to the export assembler.

    Attributes:
        id: Workflow id (integers are accepted and stringified).
        name: Display name, used to label diagnostics.
        workflow_markdown: Full workflow.md text including frontmatter.
        raw_graph_json: Builder graph JSON with ``nodes`` and ``edges``.
        step_files_json: JSON object mapping ``steps/<node>.md`` to Markdown.

    """

    id: str | int
    name: str
    workflow_markdown: str
    raw_graph_json: str
    step_files_json: str
