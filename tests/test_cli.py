"""Tests for the bmad-packager CLI commands.

Covers:
- export: archive written, config discovery, failure exit codes
- validate: archives, directories and unreadable input
- compile: JSON output and compiler errors
- agents: table and JSON listing, strict vs lenient parsing
"""

import json
from pathlib import Path
from typing import Any

import pytest
import yaml
from conftest import CREATED_AT
from typer.testing import CliRunner

from bmad_packager.cli import app
from bmad_packager.cli_utils import EXIT_CONFIG_ERROR, EXIT_ERROR, EXIT_SUCCESS
from bmad_packager.core.config import CONFIG_FILENAME
from bmad_packager.project import ProjectSource, export_project

runner = CliRunner()


@pytest.fixture
def project_file(tmp_path: Path, project_data: dict[str, Any], monkeypatch: pytest.MonkeyPatch) -> Path:
    """Project YAML in a temporary working directory."""
    monkeypatch.chdir(tmp_path)
    path = tmp_path / "project.yaml"
    path.write_text(yaml.safe_dump(project_data), encoding="utf-8")
    return path


class TestExportCommand:
    """bmad-packager export."""

    def test_writes_archive(self, project_file: Path) -> None:
        """A valid project is written into the output directory."""
        result = runner.invoke(app, ["export", "project.yaml", "-o", "out", "--created-at", CREATED_AT])
        assert result.exit_code == EXIT_SUCCESS, result.output
        target = project_file.parent / "out" / "Demo Project.bmad"
        assert target.is_file()
        assert "Wrote" in result.output

    def test_same_archive_as_library(self, project_file: Path, project_data: dict[str, Any]) -> None:
        """The CLI writes exactly what export_project produces."""
        result = runner.invoke(app, ["export", "project.yaml", "-o", "out", "-q"])
        assert result.exit_code == EXIT_SUCCESS, result.output
        expected = export_project(ProjectSource.model_validate(project_data)).zip_bytes
        assert (project_file.parent / "out" / "Demo Project.bmad").read_bytes() == expected
        assert result.output == ""

    def test_config_next_to_project(self, project_file: Path) -> None:
        """A config file beside the project is picked up."""
        (project_file.parent / CONFIG_FILENAME).write_text("archive_extension: zip\n", encoding="utf-8")
        result = runner.invoke(app, ["export", "project.yaml", "-o", "out"])
        assert result.exit_code == EXIT_SUCCESS, result.output
        assert (project_file.parent / "out" / "Demo Project.zip").is_file()

    def test_invalid_config(self, project_file: Path) -> None:
        """Config errors use their own exit code."""
        config = project_file.parent / "custom.yaml"
        config.write_text("zip_compression: rar\n", encoding="utf-8")
        result = runner.invoke(app, ["export", "project.yaml", "--config", str(config)])
        assert result.exit_code == EXIT_CONFIG_ERROR

    def test_missing_project(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        """Missing project files exit with 1."""
        monkeypatch.chdir(tmp_path)
        result = runner.invoke(app, ["export", "nope.yaml"])
        assert result.exit_code == EXIT_ERROR
        assert "Project file not found" in result.output

    def test_export_errors(self, tmp_path: Path, project_data: dict[str, Any], monkeypatch: pytest.MonkeyPatch) -> None:
        """Pipeline errors are listed and nothing is written."""
        monkeypatch.chdir(tmp_path)
        project_data["workflows"][0]["graphJson"]["nodes"][0]["data"]["agentId"] = "ghost"
        (tmp_path / "p.json").write_text(json.dumps(project_data), encoding="utf-8")
        result = runner.invoke(app, ["export", "p.json", "-o", "out"])
        assert result.exit_code == EXIT_ERROR
        assert "failed with 1 error(s)" in result.output
        assert "ghost" in result.output
        assert not (tmp_path / "out").exists()


class TestValidateCommand:
    """bmad-packager validate."""

    def test_valid_archive(self, project_file: Path) -> None:
        """Exported archives validate cleanly."""
        runner.invoke(app, ["export", "project.yaml", "-o", "."])
        result = runner.invoke(app, ["validate", "Demo Project.bmad"])
        assert result.exit_code == EXIT_SUCCESS, result.output
        assert "no schema errors" in result.output

    def test_invalid_directory(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        """Issues are listed per file and exit with 1."""
        monkeypatch.chdir(tmp_path)
        bundle = tmp_path / "bundle"
        bundle.mkdir()
        (bundle / "bmad.json").write_text("{}", encoding="utf-8")
        (bundle / "agents.json").write_text("[]", encoding="utf-8")
        result = runner.invoke(app, ["validate", "bundle"])
        assert result.exit_code == EXIT_ERROR
        assert "bmad.json" in result.output
        assert "issue(s) found" in result.output

    def test_unreadable(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        """Non-zip files exit with 1."""
        monkeypatch.chdir(tmp_path)
        (tmp_path / "junk.bmad").write_bytes(b"junk")
        result = runner.invoke(app, ["validate", "junk.bmad"])
        assert result.exit_code == EXIT_ERROR
        assert "Not a zip archive" in result.output


class TestCompileCommand:
    """bmad-packager compile."""

    def test_prints_graph(self, tmp_path: Path, builder_graph: dict[str, Any]) -> None:
        """The compiled graph is printed as JSON."""
        path = tmp_path / "graph.json"
        path.write_text(json.dumps(builder_graph), encoding="utf-8")
        result = runner.invoke(app, ["compile", str(path)])
        assert result.exit_code == EXIT_SUCCESS, result.output
        graph = json.loads(result.output)
        assert graph["schemaVersion"] == "1.1"
        assert graph["entryNodeId"] == "plan"

    def test_cycle(self, tmp_path: Path) -> None:
        """Compiler errors exit with 1."""
        path = tmp_path / "graph.json"
        graph = {
            "nodes": [{"id": "a"}, {"id": "b"}],
            "edges": [{"source": "a", "target": "b"}, {"source": "b", "target": "a"}],
        }
        path.write_text(json.dumps(graph), encoding="utf-8")
        result = runner.invoke(app, ["compile", str(path)])
        assert result.exit_code == EXIT_ERROR
        assert "cycle detected" in result.output

    @pytest.mark.parametrize("content", ["{", "[]"])
    def test_bad_input(self, tmp_path: Path, content: str) -> None:
        """Invalid JSON and non-objects exit with 1."""
        path = tmp_path / "graph.json"
        path.write_text(content, encoding="utf-8")
        assert runner.invoke(app, ["compile", str(path)]).exit_code == EXIT_ERROR

    def test_missing_file(self, tmp_path: Path) -> None:
        """Missing input files exit with 1."""
        result = runner.invoke(app, ["compile", str(tmp_path / "none.json")])
        assert result.exit_code == EXIT_ERROR
        assert "File not found" in result.output


class TestAgentsCommand:
    """bmad-packager agents."""

    @pytest.fixture
    def agents_file(self, tmp_path: Path, agents_manifest: dict[str, Any]) -> Path:
        """agents.json with one record missing its id."""
        agents_manifest["agents"].append({"metadata": {"name": "Nobody"}})
        path = tmp_path / "agents.json"
        path.write_text(json.dumps(agents_manifest), encoding="utf-8")
        return path

    def test_table(self, tmp_path: Path, agents_json: str) -> None:
        """Agents are listed in a table."""
        path = tmp_path / "agents.json"
        path.write_text(agents_json, encoding="utf-8")
        result = runner.invoke(app, ["agents", str(path)])
        assert result.exit_code == EXIT_SUCCESS, result.output
        assert "Agents (2)" in result.output
        assert "Amelia" in result.output

    def test_json(self, tmp_path: Path, agents_json: str) -> None:
        """--json prints the normalized manifest."""
        path = tmp_path / "agents.json"
        path.write_text(agents_json, encoding="utf-8")
        result = runner.invoke(app, ["agents", str(path), "--json"])
        assert result.exit_code == EXIT_SUCCESS, result.output
        manifest = json.loads(result.output)
        assert [a["id"] for a in manifest["agents"]] == ["pm", "dev"]

    def test_strict_rejects_bad_records(self, agents_file: Path) -> None:
        """Strict mode fails on an invalid record."""
        result = runner.invoke(app, ["agents", str(agents_file)])
        assert result.exit_code == EXIT_ERROR
        assert "must not be empty" in result.output

    def test_lenient_filters_bad_records(self, agents_file: Path) -> None:
        """Lenient mode drops the record with a warning."""
        result = runner.invoke(app, ["agents", str(agents_file), "--lenient"])
        assert result.exit_code == EXIT_SUCCESS, result.output
        assert "Warning:" in result.output
        assert "Agents (2)" in result.output

    def test_no_agents(self, tmp_path: Path) -> None:
        """An empty legacy array lists nothing."""
        path = tmp_path / "agents.json"
        path.write_text("[]", encoding="utf-8")
        result = runner.invoke(app, ["agents", str(path), "--lenient"])
        assert result.exit_code == EXIT_SUCCESS
        assert "No agents" in result.output
