"""Command line interface for bmad-packager.

Commands:
- `bmad-packager export`: Build a .bmad archive from a project source file
- `bmad-packager validate`: Schema-check an archive or an unpacked bundle
- `bmad-packager compile`: Compile a builder graph into workflow.graph.json
- `bmad-packager agents`: Normalize and list an agents JSON file

Example:
    $ bmad-packager export project.yaml -o dist/
    $ bmad-packager validate dist/My_Project.bmad
"""

import json
import logging
from pathlib import Path

import typer
from rich.markup import escape
from rich.table import Table

from bmad_packager.agents import build_agents_manifest, format_agents_manifest, list_agents_for_display
from bmad_packager.archive import read_bundle
from bmad_packager.cli_utils import (
    EXIT_CONFIG_ERROR,
    EXIT_ERROR,
    EXIT_SUCCESS,
    _error,
    _info,
    _setup_logging,
    _success,
    _warning,
    console,
)
from bmad_packager.core.config import CONFIG_FILENAME, load_config
from bmad_packager.core.exceptions import BundleReadError, ConfigError, ProjectLoadError
from bmad_packager.export.bundle import group_issues_by_file, validate_export_bundle
from bmad_packager.graph.compiler import compile_workflow_graph
from bmad_packager.project import export_project, load_project_source

logger = logging.getLogger(__name__)

app = typer.Typer(
    name="bmad-packager",
    help="Build and validate BMAD v1.1 workflow packages",
    no_args_is_help=True,
)


def _read_text(path: Path) -> str:
    """Read a UTF-8 input file.

    Raises:
        typer.Exit: If the file cannot be read.

    """
    try:
        return path.read_text(encoding="utf-8")
    except FileNotFoundError:
        _error(f"File not found: {path}")
        raise typer.Exit(code=EXIT_ERROR) from None
    except PermissionError:
        _error(f"Permission denied: {path}")
        raise typer.Exit(code=EXIT_ERROR) from None
    except UnicodeDecodeError:
        _error(f"Cannot decode file (not valid UTF-8): {path}")
        raise typer.Exit(code=EXIT_ERROR) from None


def _load_config_for(project_file: Path, config: Path | None) -> None:
    """Install --config, else a config file next to the project, else defaults."""
    if config is None:
        candidate = project_file.parent / CONFIG_FILENAME
        config = candidate if candidate.is_file() else None
    try:
        load_config(config)
    except ConfigError as e:
        _error(str(e))
        raise typer.Exit(code=EXIT_CONFIG_ERROR) from None
    if config is not None:
        logger.debug("Using config file %s", config)


def _print_warnings(messages: list[str]) -> None:
    for message in messages:
        _warning(message)


@app.command("export")
def export_command(
    project_file: Path = typer.Argument(..., help="Project source file (.yaml or .json)"),
    output_dir: Path = typer.Option(
        Path("."),
        "--output",
        "-o",
        help="Directory the archive is written to (default: current directory)",
    ),
    config: Path | None = typer.Option(
        None,
        "--config",
        "-c",
        help=f"Packager config file (default: {CONFIG_FILENAME} next to the project)",
    ),
    render: bool = typer.Option(
        False,
        "--render",
        help="Regenerate workflow.md and step files from the graphs",
    ),
    created_at: str | None = typer.Option(
        None,
        "--created-at",
        help="Override the bmad.json createdAt timestamp (reproducible builds)",
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
    quiet: bool = typer.Option(False, "--quiet", "-q", help="Only print errors"),
) -> None:
    """Export a project into a .bmad archive.

    Exit codes:
        0 = archive written
        1 = project invalid or archive could not be written
        2 = config error

    """
    _setup_logging(verbose=verbose, quiet=quiet)
    _load_config_for(project_file, config)

    try:
        source = load_project_source(project_file)
    except ProjectLoadError as e:
        _error(str(e))
        raise typer.Exit(code=EXIT_ERROR) from None

    result = export_project(source, created_at=created_at, render_documents=render)
    if not quiet:
        _print_warnings(result.warnings)

    if result.zip_bytes is None:
        _error(f"Export of {result.filename} failed with {len(result.errors)} error(s):")
        for message in result.errors:
            console.print(f"  - {escape(message)}")
        raise typer.Exit(code=EXIT_ERROR)

    target = output_dir / result.filename
    try:
        output_dir.mkdir(parents=True, exist_ok=True)
        target.write_bytes(result.zip_bytes)
    except OSError as e:
        _error(f"Cannot write archive {target}: {e}")
        raise typer.Exit(code=EXIT_ERROR) from None

    if not quiet:
        _success(f"Wrote {target} ({len(result.zip_bytes)} bytes)")
    raise typer.Exit(code=EXIT_SUCCESS)


@app.command("validate")
def validate_command(
    bundle_path: Path = typer.Argument(..., help="A .bmad/.zip archive or an unpacked bundle directory"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
) -> None:
    """Validate every document of a bundle against the v1.1 schemas.

    Exits with code 0 if the bundle is valid, 1 otherwise.
    """
    _setup_logging(verbose=verbose, quiet=False)

    try:
        files = read_bundle(bundle_path)
    except BundleReadError as e:
        _error(str(e))
        raise typer.Exit(code=EXIT_ERROR) from None

    result = validate_export_bundle(files)
    if result.ok:
        _success(f"{bundle_path}: {len(files)} file(s), no schema errors")
        raise typer.Exit(code=EXIT_SUCCESS)

    for file_path, issues in group_issues_by_file(result.issues).items():
        console.print(f"[bold]{escape(file_path)}[/bold]")
        for issue in issues:
            location = issue.instance_path or "/"
            hint = f" [dim]({escape(issue.hint)})[/dim]" if issue.hint else ""
            color = "red" if issue.severity == "error" else "yellow"
            console.print(f"  [{color}]{issue.severity}[/{color}] {escape(location)}: {escape(issue.message)}{hint}")
    _error(f"{len(result.issues)} issue(s) found in {bundle_path}")
    raise typer.Exit(code=EXIT_ERROR)


@app.command("compile")
def compile_command(
    graph_file: Path = typer.Argument(..., help="Builder graph JSON ({nodes, edges})"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
) -> None:
    """Compile a builder graph and print the canonical workflow.graph.json.

    Exits with code 0 on success, 1 if the graph cannot be compiled.
    """
    _setup_logging(verbose=verbose, quiet=False)

    try:
        payload = json.loads(_read_text(graph_file))
    except json.JSONDecodeError as e:
        _error(f"Invalid JSON in {graph_file}: line {e.lineno}, column {e.colno}: {e.msg}")
        raise typer.Exit(code=EXIT_ERROR) from None
    if not isinstance(payload, dict):
        _error(f"{graph_file} must contain a JSON object with nodes and edges")
        raise typer.Exit(code=EXIT_ERROR)

    build = compile_workflow_graph(payload.get("nodes"), payload.get("edges"))
    _print_warnings(build.warnings)
    if build.graph is None:
        for message in build.errors:
            _error(message)
        raise typer.Exit(code=EXIT_ERROR)

    # Plain print keeps the JSON free of Rich markup and wrapping
    print(json.dumps(build.graph, indent=2, ensure_ascii=False))
    raise typer.Exit(code=EXIT_SUCCESS)


@app.command("agents")
def agents_command(
    agents_file: Path = typer.Argument(..., help="agents JSON (v1.1 manifest or legacy array)"),
    lenient: bool = typer.Option(
        False,
        "--lenient",
        help="Drop invalid agent records instead of failing",
    ),
    output_json: bool = typer.Option(False, "--json", help="Print the normalized agents.json"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
) -> None:
    """Normalize an agents file and list its agents.

    Strict mode (default) fails on any invalid record, exactly like export.
    Exits with code 0 on success, 1 on errors.
    """
    _setup_logging(verbose=verbose, quiet=False)
    raw = _read_text(agents_file)

    if lenient:
        listing = list_agents_for_display(raw)
        manifest, agents = listing.manifest, listing.agents
        # Filtered records are already listed one by one in the warnings
        warnings = listing.warnings or ([listing.error] if listing.error else [])
    else:
        build = build_agents_manifest(raw)
        if build.manifest is None:
            for message in build.errors:
                _error(message)
            raise typer.Exit(code=EXIT_ERROR)
        manifest, agents = build.manifest, list_agents_for_display(raw).agents
        warnings = build.warnings
    _print_warnings(warnings)

    if output_json:
        print(format_agents_manifest(manifest))
        raise typer.Exit(code=EXIT_SUCCESS)

    if not agents:
        _info("No agents")
        raise typer.Exit(code=EXIT_SUCCESS)

    table = Table(title=f"Agents ({len(agents)})")
    table.add_column("ID", style="cyan")
    table.add_column("Icon", width=4)
    table.add_column("Name")
    table.add_column("Title")
    table.add_column("Role")
    for agent in agents:
        table.add_row(
            escape(agent.id), agent.icon, escape(agent.name), escape(agent.title), escape(agent.role)
        )
    console.print(table)
    raise typer.Exit(code=EXIT_SUCCESS)


if __name__ == "__main__":
    app()
