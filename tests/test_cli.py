"""Tests for the CLI interface."""

import json

import pytest
from typer.testing import CliRunner

from memkeep.cli import app

runner = CliRunner()


@pytest.fixture
def invoke(tmp_path):
    """Run the CLI against an isolated data directory."""
    data_dir = tmp_path / "data"

    def _invoke(*args):
        return runner.invoke(app, ["--data-dir", str(data_dir), *args])

    return _invoke


def test_cli_help():
    """Test the help output lists the main commands."""
    result = runner.invoke(app, ["--help"])

    assert result.exit_code == 0
    for command in ("remember", "history", "search", "contexts", "tags"):
        assert command in result.stdout


def test_version():
    """Test --version prints the program name."""
    result = runner.invoke(app, ["--version"])

    assert result.exit_code == 0
    assert "memkeep" in result.stdout


class TestMemoryCommands:
    """Tests for memory subcommands."""

    def test_remember_and_history(self, invoke):
        """Test remembering twice and listing the history."""
        assert invoke("remember", "m1", "hello", "--context", "ctxA", "--tag", "x").exit_code == 0
        result = invoke("remember", "m1", "world", "--context", "ctxA", "--note", "update")
        assert result.exit_code == 0
        assert "version 2" in result.stdout

        result = invoke("history", "m1")
        assert result.exit_code == 0
        assert "2 versions" in result.stdout
        assert "update" in result.stdout

    def test_show_prints_full_content(self, invoke):
        """Test show prints content verbatim, markup included."""
        invoke("remember", "m1", "[bold]literal markup[/bold]")

        result = invoke("show", "m1", "1")

        assert result.exit_code == 0
        assert "[bold]literal markup[/bold]" in result.stdout

    def test_show_missing_version(self, invoke):
        """Test show exits with an error for a missing version."""
        invoke("remember", "m1", "hello")

        result = invoke("show", "m1", "7")

        assert result.exit_code == 1
        assert "not found" in result.stdout

    def test_restore(self, invoke):
        """Test restore appends the old content as a new version."""
        invoke("remember", "m1", "first")
        invoke("remember", "m1", "second")

        result = invoke("restore", "m1", "1", "--reason", "oops")
        assert result.exit_code == 0

        shown = invoke("show", "m1", "3")
        assert "first" in shown.stdout
        assert "Restored from version 1: oops" in shown.stdout

    def test_delete(self, invoke):
        """Test delete removes the whole history."""
        invoke("remember", "m1", "hello")

        assert invoke("delete", "m1").exit_code == 0
        assert invoke("history", "m1").exit_code == 1

    def test_search_json(self, invoke):
        """Test search --json returns the latest content."""
        invoke("remember", "m1", "hello", "--context", "ctxA", "--tag", "x")
        invoke("remember", "m1", "world", "--context", "ctxA", "--tag", "x", "--tag", "y")
        invoke("remember", "m2", "other", "--context", "ctxB")

        result = invoke("search", "--context", "ctxA", "--json")

        assert result.exit_code == 0
        data = json.loads(result.stdout)
        assert [r["id"] for r in data] == ["m1"]
        assert data[0]["content"] == "world"
        assert data[0]["similarity"] == 1.0

    def test_search_tag_modes(self, invoke):
        """Test search with any and all tag modes."""
        invoke("remember", "m1", "a", "--tag", "x", "--tag", "y")
        invoke("remember", "m2", "b", "--tag", "x")

        any_result = json.loads(invoke("search", "--tag", "x", "--tag", "y", "--json").stdout)
        all_result = json.loads(invoke("search", "--tag", "x", "--tag", "y", "--mode", "all", "--json").stdout)

        assert [r["id"] for r in any_result] == ["m1", "m2"]
        assert [r["id"] for r in all_result] == ["m1"]

    def test_search_unknown_context_fails(self, invoke):
        """Test search rejects an unregistered context."""
        result = invoke("search", "--context", "missing")

        assert result.exit_code == 1
        assert "Search failed" in result.stdout

    def test_search_bad_date(self, invoke):
        """Test search rejects an unparseable date."""
        result = invoke("search", "--since", "yesterday-ish")

        assert result.exit_code != 0

    def test_search_empty(self, invoke):
        """Test search on an empty store."""
        result = invoke("search")

        assert result.exit_code == 0
        assert "No memories found" in result.stdout

    def test_stats(self, invoke):
        """Test stats output for a context."""
        invoke("remember", "m1", "abcd", "--context", "ctxA", "--tag", "x")

        result = invoke("stats", "ctxA")

        assert result.exit_code == 0
        assert "Memories: 1" in result.stdout
        assert "Total characters: 4" in result.stdout

    def test_export_and_import(self, invoke, tmp_path):
        """Test exporting to a file and importing into another data dir."""
        invoke("remember", "m1", "hello", "--context", "ctxA")
        invoke("remember", "m1", "world", "--context", "ctxA")
        export_path = tmp_path / "export.json"

        result = invoke("export", "--output", str(export_path))
        assert result.exit_code == 0
        data = json.loads(export_path.read_text())
        assert data["memories"][0]["current_version"] == 2

        other = runner.invoke(app, ["--data-dir", str(tmp_path / "other"), "import", str(export_path)])
        assert other.exit_code == 0
        assert "Imported 1 memories" in other.stdout

        history = runner.invoke(app, ["--data-dir", str(tmp_path / "other"), "history", "m1"])
        assert "2 versions" in history.stdout

    def test_export_no_versions(self, invoke):
        """Test export --no-versions keeps only the latest version."""
        invoke("remember", "m1", "hello")
        invoke("remember", "m1", "world")

        result = invoke("export", "--no-versions")

        data = json.loads(result.stdout)
        assert len(data["memories"][0]["versions"]) == 1
        assert data["memories"][0]["versions"][0]["content"] == "world"

    def test_import_invalid_file(self, invoke, tmp_path):
        """Test import reports a malformed file."""
        bad = tmp_path / "bad.json"
        bad.write_text("{nope")

        result = invoke("import", str(bad))

        assert result.exit_code == 1
        assert "Import failed" in result.stdout


class TestTaxonomyCommands:
    """Tests for contexts and tags subcommands."""

    def test_contexts_list_has_default(self, invoke):
        """Test the default context is always listed."""
        result = invoke("contexts", "list")

        assert result.exit_code == 0
        assert "general" in result.stdout

    def test_contexts_create_and_delete(self, invoke):
        """Test creating and deleting a context."""
        assert invoke("contexts", "create", "work", "--name", "Work").exit_code == 0
        assert invoke("contexts", "create", "work").exit_code == 1
        assert "work" in invoke("contexts", "list").stdout

        assert invoke("contexts", "delete", "work").exit_code == 0
        assert invoke("contexts", "delete", "general").exit_code == 1

    def test_tags(self, invoke):
        """Test the tag create, list and delete commands."""
        assert "No tags defined" in invoke("tags", "list").stdout

        result = invoke("tags", "create", "Urgent", "--color", "#f00")
        assert result.exit_code == 0
        assert "urgent" in result.stdout

        assert "urgent" in invoke("tags", "list").stdout
        assert invoke("tags", "delete", "URGENT").exit_code == 0
        assert invoke("tags", "delete", "urgent").exit_code == 1
