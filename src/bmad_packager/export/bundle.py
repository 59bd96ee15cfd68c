"""End-to-end schema validation of an assembled export bundle.

This is the last gate before an archive is written. It works on any
path -> content mapping, so bundles read back from disk or produced by other
tools can be checked the same way as freshly assembled ones.
"""

import json
import logging
import re
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any, Literal

from bmad_packager.core.types import FileContent
from bmad_packager.export.frontmatter import parse_markdown_frontmatter
from bmad_packager.export.validators import DocumentKind, SchemaViolation, get_validator

logger = logging.getLogger(__name__)

Severity = Literal["error", "warning"]
IssueKind = Literal["schema", "frontmatter"]

PACKAGE_MANIFEST_PATH = "bmad.json"
AGENTS_MANIFEST_PATH = "agents.json"

_ENTRY_WORKFLOW_RE = re.compile(r"^workflows/([^/]+)/workflow\.md$")


@dataclass(frozen=True)
class ExportValidationIssue:
    """One problem found in a bundle file.

    Attributes:
        severity: "error" blocks export, "warning" never does.
        file_path: Archive-relative path of the offending file.
        kind: "schema" for JSON documents, "frontmatter" for Markdown files.
        message: Human readable description.
        instance_path: JSON pointer of the offending value, if schema-based.
        schema_path: JSON pointer into the schema, if schema-based.
        hint: Short fix hint, if one could be derived.

    """

    severity: Severity
    file_path: str
    kind: IssueKind
    message: str
    instance_path: str | None = None
    schema_path: str | None = None
    hint: str | None = None


@dataclass(frozen=True)
class ExportValidationResult:
    """Validation outcome; ok is True iff no issue has error severity."""

    ok: bool
    issues: list[ExportValidationIssue] = field(default_factory=list)


def _schema_issues(
    file_path: str, kind: IssueKind, violations: list[SchemaViolation]
) -> list[ExportValidationIssue]:
    return [
        ExportValidationIssue(
            severity="error",
            file_path=file_path,
            kind=kind,
            message=v.message,
            instance_path=v.instance_path,
            schema_path=v.schema_path,
            hint=v.hint,
        )
        for v in violations
    ]


def _parse_json_object(
    file_path: str, value: FileContent | None, issues: list[ExportValidationIssue]
) -> dict[str, Any] | None:
    def fail(message: str) -> None:
        issues.append(ExportValidationIssue("error", file_path, "schema", message))

    if not isinstance(value, str):
        fail("file is missing or not text, cannot validate JSON schema")
        return None
    trimmed = value.strip()
    if not trimmed:
        fail("file is empty, cannot validate JSON schema")
        return None
    try:
        parsed = json.loads(trimmed)
    except json.JSONDecodeError as e:
        fail(f"invalid JSON: {e.msg} (line {e.lineno}, column {e.colno})")
        return None
    if not isinstance(parsed, dict):
        fail("JSON root must be an object")
        return None
    return parsed


def _ensure_text(
    file_path: str, value: FileContent | None, issues: list[ExportValidationIssue]
) -> str | None:
    if not isinstance(value, str):
        issues.append(
            ExportValidationIssue(
                "error", file_path, "frontmatter", "file is missing or not text, cannot parse frontmatter"
            )
        )
        return None
    if not value.strip():
        issues.append(
            ExportValidationIssue("error", file_path, "frontmatter", "file is empty, cannot parse frontmatter")
        )
        return None
    return value


def _validate_json_document(
    file_path: str,
    value: FileContent | None,
    kind: DocumentKind,
    issues: list[ExportValidationIssue],
) -> dict[str, Any] | None:
    document = _parse_json_object(file_path, value, issues)
    if document is not None:
        issues.extend(_schema_issues(file_path, "schema", get_validator(kind).check(document)))
    return document


def _validate_markdown_document(
    file_path: str,
    value: FileContent | None,
    kind: DocumentKind,
    issues: list[ExportValidationIssue],
) -> None:
    text = _ensure_text(file_path, value, issues)
    if text is None:
        return
    parsed = parse_markdown_frontmatter(text)
    if parsed.data is None:
        issues.append(
            ExportValidationIssue(
                "error", file_path, "frontmatter", parsed.error or "frontmatter could not be parsed"
            )
        )
        return
    issues.extend(_schema_issues(file_path, "frontmatter", get_validator(kind).check(parsed.data)))


def collect_workflow_ids(package_manifest: Mapping[str, Any]) -> list[str]:
    """Workflow ids listed in bmad.json, falling back to the entry workflow path."""
    ids: list[str] = []
    workflows = package_manifest.get("workflows")
    if isinstance(workflows, list):
        for wf in workflows:
            if not isinstance(wf, dict):
                continue
            wf_id = wf.get("id")
            if isinstance(wf_id, str) and wf_id.strip() and wf_id.strip() not in ids:
                ids.append(wf_id.strip())
    if ids:
        return ids

    entry = package_manifest.get("entry")
    if not isinstance(entry, dict):
        return []
    workflow_path = entry.get("workflow")
    if not isinstance(workflow_path, str):
        return []
    match = _ENTRY_WORKFLOW_RE.match(workflow_path.strip())
    return [match.group(1)] if match else []


def _step_files_by_workflow(
    files_by_path: Mapping[str, FileContent],
) -> dict[str, list[tuple[str, FileContent]]]:
    buckets: dict[str, list[tuple[str, FileContent]]] = {}
    for path in sorted(files_by_path):
        if not path.startswith("workflows/") or not path.endswith(".md"):
            continue
        parts = path.split("/")
        if len(parts) < 4 or parts[2] != "steps":
            continue
        workflow_id = parts[1].strip()
        if workflow_id:
            buckets.setdefault(workflow_id, []).append((path, files_by_path[path]))
    return buckets


def validate_export_bundle(files_by_path: Mapping[str, FileContent] | None) -> ExportValidationResult:
    """Schema-validate every document of a bundle.

    Checks bmad.json and agents.json, then for each workflow its graph, the
    workflow.md frontmatter and every ``steps/*.md`` frontmatter.

    Args:
        files_by_path: Archive-relative path -> text or bytes.

    Returns:
        ExportValidationResult with all issues found.

    """
    files = files_by_path or {}
    issues: list[ExportValidationIssue] = []

    package_manifest = _validate_json_document(
        PACKAGE_MANIFEST_PATH, files.get(PACKAGE_MANIFEST_PATH), DocumentKind.PACKAGE_MANIFEST, issues
    )
    _validate_json_document(
        AGENTS_MANIFEST_PATH, files.get(AGENTS_MANIFEST_PATH), DocumentKind.AGENTS_MANIFEST, issues
    )

    workflow_ids = collect_workflow_ids(package_manifest) if package_manifest else []
    step_files = _step_files_by_workflow(files)

    for workflow_id in workflow_ids:
        base = f"workflows/{workflow_id}"
        graph_path = f"{base}/workflow.graph.json"
        _validate_json_document(graph_path, files.get(graph_path), DocumentKind.WORKFLOW_GRAPH, issues)

        workflow_md_path = f"{base}/workflow.md"
        _validate_markdown_document(
            workflow_md_path, files.get(workflow_md_path), DocumentKind.WORKFLOW_FRONTMATTER, issues
        )

        for step_path, content in step_files.get(workflow_id, []):
            _validate_markdown_document(step_path, content, DocumentKind.STEP_FRONTMATTER, issues)

    ok = all(issue.severity != "error" for issue in issues)
    logger.debug(
        "Validated bundle: %d workflow(s), %d issue(s), ok=%s", len(workflow_ids), len(issues), ok
    )
    return ExportValidationResult(ok=ok, issues=issues)


def group_issues_by_file(issues: list[ExportValidationIssue]) -> dict[str, list[ExportValidationIssue]]:
    """Group issues by file path, keeping first-seen file order."""
    grouped: dict[str, list[ExportValidationIssue]] = {}
    for issue in issues:
        grouped.setdefault(issue.file_path, []).append(issue)
    return grouped


def format_issue(issue: ExportValidationIssue) -> str:
    """One-line rendering: ``<file><pointer>: <message> (<hint>)``."""
    line = f"{issue.file_path}{issue.instance_path or ''}: {issue.message}"
    if issue.hint:
        line = f"{line} ({issue.hint})"
    return line
