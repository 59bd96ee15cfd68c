"""bmad-packager: build, validate and archive BMAD v1.1 workflow packages.

This module provides:
- build_agents_manifest(): Normalize agents JSON into agents.json
- build_package_manifest(): Build bmad.json for a project
- compile_workflow_graph(): Compile builder nodes/edges into workflow.graph.json
- assemble_export_files(): Assemble and cross-check every file of a bundle
- validate_export_bundle(): Schema-validate an assembled or unpacked bundle
- build_zip_bundle(): Assemble, validate and zip in one call
- export_project(): Run the whole pipeline for a project source

Example:
    >>> from bmad_packager import compile_workflow_graph
    >>> build = compile_workflow_graph([{"id": "a"}], [])
    >>> build.graph["entryNodeId"]
    'a'

"""

from bmad_packager.agents import build_agents_manifest
from bmad_packager.archive import build_zip_bundle, read_bundle
from bmad_packager.assembler import assemble_export_files
from bmad_packager.core.types import WorkflowExportInput
from bmad_packager.export.bundle import validate_export_bundle
from bmad_packager.graph.compiler import compile_workflow_graph
from bmad_packager.manifest import WorkflowListItem, build_package_manifest
from bmad_packager.project import ProjectSource, export_project, load_project_source

__version__ = "0.1.0"

__all__ = [
    "WorkflowExportInput",
    "WorkflowListItem",
    "ProjectSource",
    "assemble_export_files",
    "build_agents_manifest",
    "build_package_manifest",
    "build_zip_bundle",
    "compile_workflow_graph",
    "export_project",
    "load_project_source",
    "read_bundle",
    "validate_export_bundle",
]
