"""Package manifest builder (bmad.json).

Derives the top-level package descriptor from the project's workflow list:
deterministic workflow order, a single entry workflow and the fixed archive
paths of every workflow document.
"""

import json
import logging
from collections.abc import Sequence
from dataclasses import dataclass
from typing import Any

from bmad_packager.core.config import get_config
from bmad_packager.core.ids import is_valid_id, workflow_paths
from bmad_packager.core.types import PackageManifestBuildResult, ValidationResult
from bmad_packager.export.validators import DocumentKind, format_violations, get_validator

logger = logging.getLogger(__name__)

AGENTS_PATH = "agents.json"
ASSETS_DIR = "assets/"


@dataclass(frozen=True)
class WorkflowListItem:
    """A workflow as listed in the project.

    Attributes:
        id: Workflow id; integers are stringified.
        name: Display name.
        is_default: Whether the user marked it as the package entry.

    """

    id: str | int
    name: str
    is_default: bool = False


def workflow_sort_key(workflow_id: str) -> tuple[int, int, str]:
    """Numeric ids first in numeric order, then the rest lexicographically."""
    if workflow_id.isdigit():
        return 0, int(workflow_id), workflow_id
    return 1, 0, workflow_id


def build_package_manifest(
    project_name: str,
    workflows: Sequence[WorkflowListItem],
    created_at: str,
    version: str | None = None,
) -> PackageManifestBuildResult:
    """Build bmad.json for a project.

    Args:
        project_name: Package name; blank falls back to the untitled name.
        workflows: All workflows of the project.
        created_at: ISO-8601 creation timestamp.
        version: Package version; defaults to the configured default.

    Returns:
        PackageManifestBuildResult with manifest None on any error,
        including a manifest that fails the bmad.json schema.

    """
    config = get_config()
    warnings: list[str] = []
    errors: list[str] = []

    name = (project_name or "").strip()
    if not name:
        name = config.untitled_name
        warnings.append(f'project name is empty, using "{name}"')

    if not workflows:
        return PackageManifestBuildResult(
            manifest=None,
            warnings=warnings,
            errors=["no workflows: bmad.json needs at least one workflow"],
        )

    by_id: dict[str, WorkflowListItem] = {}
    for wf in workflows:
        wf_id = str(wf.id).strip()
        if wf_id in by_id:
            errors.append(f"duplicate workflow id: {wf_id}")
            continue
        by_id[wf_id] = wf

    ordered_ids = sorted(by_id, key=workflow_sort_key)
    invalid = [wf_id or "<empty>" for wf_id in ordered_ids if not is_valid_id(wf_id)]
    if invalid:
        errors.append(f"invalid workflow id(s): {', '.join(invalid)}")

    created_at = (created_at or "").strip()
    if not created_at:
        errors.append("createdAt is empty")

    version = (config.default_version if version is None else version).strip()
    if not version:
        errors.append("version is empty")

    if errors:
        return PackageManifestBuildResult(manifest=None, warnings=warnings, errors=errors)

    default_ids = [wf_id for wf_id in ordered_ids if by_id[wf_id].is_default]
    if len(default_ids) > 1:
        warnings.append(f"multiple default workflows, using the lowest id: {', '.join(default_ids)}")
    if default_ids:
        entry_id = default_ids[0]
    else:
        entry_id = ordered_ids[0]
        warnings.append(f"no default workflow set, using workflow {entry_id} as entry")

    entry_workflow, entry_graph = workflow_paths(entry_id)
    index = []
    for wf_id in ordered_ids:
        md_path, graph_path = workflow_paths(wf_id)
        index.append(
            {
                "id": wf_id,
                "displayName": by_id[wf_id].name,
                "workflow": md_path,
                "graph": graph_path,
                "tags": [],
            }
        )

    manifest = {
        "schemaVersion": config.schema_version,
        "name": name,
        "version": version,
        "createdAt": created_at,
        "entry": {
            "workflow": entry_workflow,
            "graph": entry_graph,
            "agents": AGENTS_PATH,
            "assetsDir": ASSETS_DIR,
        },
        "workflows": index,
    }
    validation = validate_package_manifest(manifest)
    if not validation.ok:
        return PackageManifestBuildResult(manifest=None, warnings=warnings, errors=validation.errors)

    logger.debug("Built package manifest: %d workflow(s), entry=%s", len(index), entry_id)
    return PackageManifestBuildResult(manifest=manifest, warnings=warnings)


def format_package_manifest(manifest: dict[str, Any]) -> str:
    """Serialize bmad.json as canonical JSON."""
    return json.dumps(manifest, indent=2, ensure_ascii=False)


def validate_package_manifest(value: Any) -> ValidationResult:
    """Validate a value against the bmad.json schema."""
    violations = get_validator(DocumentKind.PACKAGE_MANIFEST).check(value)
    return ValidationResult(ok=not violations, errors=format_violations(violations))
