"""
Tests for the CLI commands.

The multiplexer and the terminal window host are replaced by the in-memory
fakes from conftest; every command runs inside an isolated filesystem.
"""

import json
import pytest
from pathlib import Path
from unittest.mock import patch
from click.testing import CliRunner

from immorterm.cli import main
from immorterm.config import PROJECT_DIR_ENV, ProjectPaths
from immorterm.lifecycle import DISPLAY_NAME_ENV, MULTIPLEXER_ENV, SESSION_ID_ENV

from conftest import FakeHost, FakeMultiplexer


@pytest.fixture
def runner():
    """Create a CLI test runner."""
    return CliRunner()


@pytest.fixture
def fakes(monkeypatch):
    """Patch the multiplexer factory and the terminal host."""
    monkeypatch.delenv(PROJECT_DIR_ENV, raising=False)
    for name in (SESSION_ID_ENV, DISPLAY_NAME_ENV, MULTIPLEXER_ENV):
        monkeypatch.delenv(name, raising=False)
    multiplexer = FakeMultiplexer()
    host = FakeHost()
    with patch("immorterm.cli._get_multiplexer", return_value=multiplexer), \
            patch("immorterm.cli.TerminalWindowHost", return_value=host):
        yield multiplexer, host


@pytest.fixture
def project(runner, tmp_path, fakes):
    """An initialized project; yields its paths."""
    with runner.isolated_filesystem(temp_dir=tmp_path):
        result = runner.invoke(main, ["init", "--non-interactive"])
        assert result.exit_code == 0, result.output
        yield ProjectPaths.discover()


def _records(paths):
    if not paths.sessions_file.exists():
        return []
    return json.loads(paths.sessions_file.read_text())["records"]


class TestInitCommand:
    """Tests for the 'immorterm init' command."""

    def test_creates_state_directory(self, runner, tmp_path, fakes):
        with runner.isolated_filesystem(temp_dir=tmp_path):
            result = runner.invoke(main, ["init", "--non-interactive"])

            assert result.exit_code == 0
            assert Path(".immorterm/.gitignore").read_text() == "*\n"
            config = json.loads(Path(".immorterm/config.json").read_text())
            assert config["multiplexer"] == "screen"
            assert "immorterm initialized!" in result.output

    def test_skips_if_already_configured(self, runner, project):
        project.config_file.write_text(json.dumps({"multiplexer": "tmux"}))

        result = runner.invoke(main, ["init", "--non-interactive"])

        assert "already configured" in result.output
        assert json.loads(project.config_file.read_text()) == {"multiplexer": "tmux"}

    def test_force_overwrites(self, runner, project):
        project.config_file.write_text(json.dumps({"multiplexer": "tmux"}))
        result = runner.invoke(main, ["init", "--non-interactive", "--force"])
        assert result.exit_code == 0
        assert json.loads(project.config_file.read_text())["multiplexer"] == "screen"

    def test_interactive_selection(self, runner, tmp_path, fakes):
        with runner.isolated_filesystem(temp_dir=tmp_path):
            result = runner.invoke(main, ["init"], input="2\n")

            assert result.exit_code == 0
            assert "Multiplexer" in result.output
            assert json.loads(Path(".immorterm/config.json").read_text())["multiplexer"] == "tmux"

    def test_warns_when_multiplexer_missing(self, runner, tmp_path, fakes):
        multiplexer, _ = fakes
        multiplexer.available = False
        with runner.isolated_filesystem(temp_dir=tmp_path):
            result = runner.invoke(main, ["init", "--non-interactive"])
            assert result.exit_code == 0
            assert "without persistence" in result.output


class TestNewCommand:
    def test_new_records_session(self, runner, project, fakes):
        _, host = fakes

        result = runner.invoke(main, ["new", "api", "--correlation-id", "conv-1"])

        assert result.exit_code == 0, result.output
        assert "Opened api" in result.output
        records = _records(project)
        assert [r["displayName"] for r in records] == ["api"]
        assert records[0]["correlationId"] == "conv-1"
        assert host.created[0]["launch_command"][-3:] == ["attach", records[0]["id"], "api"]

    def test_new_generates_names(self, runner, project):
        runner.invoke(main, ["new"])
        runner.invoke(main, ["new"])
        assert sorted(r["displayName"] for r in _records(project)) == ["immorterm-1", "immorterm-2"]

    def test_new_without_multiplexer(self, runner, project, fakes):
        multiplexer, host = fakes
        multiplexer.available = False

        result = runner.invoke(main, ["new"])

        assert result.exit_code == 0
        assert "without persistence" in result.output
        assert host.created[0]["launch_command"] is None
        assert _records(project) == []

    def test_host_failure_exits_nonzero(self, runner, project, fakes):
        _, host = fakes
        host.fail = True
        result = runner.invoke(main, ["new"])
        assert result.exit_code == 1
        assert "Error:" in result.output


class TestSessionCommands:
    @pytest.fixture
    def api(self, runner, project):
        runner.invoke(main, ["new", "api"])
        return _records(project)[0]

    def test_sessions_empty(self, runner, project):
        result = runner.invoke(main, ["sessions"])
        assert result.exit_code == 0
        assert "No sessions recorded" in result.output

    def test_sessions_lists_records(self, runner, api):
        result = runner.invoke(main, ["sessions"])
        assert result.exit_code == 0
        assert "api" in result.output

    def test_rename_by_display_name(self, runner, project, api):
        result = runner.invoke(main, ["rename", "api", "database"])
        assert result.exit_code == 0, result.output
        assert _records(project)[0]["displayName"] == "database"

    def test_rename_unknown(self, runner, project):
        result = runner.invoke(main, ["rename", "nope", "x"])
        assert result.exit_code == 1
        assert "not found" in result.output

    def test_link_and_clear(self, runner, project, api):
        runner.invoke(main, ["link", api["id"], "conv-9"])
        assert _records(project)[0]["correlationId"] == "conv-9"

        result = runner.invoke(main, ["link", api["id"]])
        assert "Cleared" in result.output
        assert "correlationId" not in _records(project)[0]

    def test_forget_kills_and_removes(self, runner, project, fakes, api):
        multiplexer, _ = fakes
        external = f"{project.namespace}-{api['id']}"
        multiplexer.add_session(external)

        result = runner.invoke(main, ["forget", "api", "--yes"])

        assert result.exit_code == 0, result.output
        assert multiplexer.killed == [external]
        assert _records(project) == []

    def test_forget_asks_for_confirmation(self, runner, project, api):
        result = runner.invoke(main, ["forget", "api"], input="n\n")
        assert result.exit_code == 1
        assert len(_records(project)) == 1

    def test_forget_all(self, runner, project, api):
        runner.invoke(main, ["new", "db"])
        result = runner.invoke(main, ["forget-all", "--yes"])
        assert result.exit_code == 0
        assert "Forgot 2" in result.output
        assert _records(project) == []

    def test_kill_all_keeps_records(self, runner, project, fakes, api):
        multiplexer, _ = fakes
        multiplexer.add_session(f"{project.namespace}-{api['id']}")
        multiplexer.add_session("other-1-0000000a")

        result = runner.invoke(main, ["kill-all", "--yes"])

        assert "Killed 1" in result.output
        assert list(multiplexer.sessions) == ["other-1-0000000a"]
        assert len(_records(project)) == 1

    def test_cleanup_deletes_orphaned_logs(self, runner, project, api):
        project.logs_dir.mkdir(parents=True, exist_ok=True)
        kept = project.log_file_for(f"{project.namespace}-{api['id']}")
        orphan = project.log_file_for(f"{project.namespace}-9-0000000f")
        kept.write_text("x")
        orphan.write_text("x")

        result = runner.invoke(main, ["cleanup"])

        assert result.exit_code == 0
        assert "Deleted 1 orphaned" in result.output
        assert kept.exists()
        assert not orphan.exists()


class TestStatusCommand:
    def test_status_available(self, runner, project):
        result = runner.invoke(main, ["status"])
        assert result.exit_code == 0
        assert "Persistence: available (fake)" in result.output
        assert f"Namespace: {project.namespace}" in result.output

    def test_status_degraded(self, runner, project, fakes):
        """Missing multiplexer is reported, not hidden."""
        multiplexer, _ = fakes
        multiplexer.available = False

        result = runner.invoke(main, ["status"])

        assert result.exit_code == 0
        assert "unavailable" in result.output
        assert "fake not found" in result.output


class TestRunCommand:
    def test_run_with_nothing_to_watch(self, runner, project):
        result = runner.invoke(main, ["run", "--poll-interval", "0"])
        assert result.exit_code == 0, result.output
        assert "Restored 0 terminal(s)" in result.output
        assert "No terminals left" in result.output


class TestReconcileCommand:
    def test_merges_pending_registrations(self, runner, project):
        project.pending_dir.mkdir(parents=True)
        (project.pending_dir / "1-0000000a.json").write_text(
            json.dumps({"id": "1-0000000a", "displayName": "late", "createdAt": 5})
        )

        result = runner.invoke(main, ["reconcile"])

        assert result.exit_code == 0
        assert "Merged 1" in result.output
        assert [r["displayName"] for r in _records(project)] == ["late"]
        assert list(project.pending_dir.iterdir()) == []


class TestAttachCommand:
    def test_registers_and_execs_multiplexer(self, runner, project):
        with patch("immorterm.cli.os.execvp") as execvp:
            result = runner.invoke(main, ["attach", "1-0000000a", "api"])

        assert result.exit_code == 0, result.output
        assert [r["id"] for r in _records(project)] == ["1-0000000a"]
        execvp.assert_called_once_with(
            "fake", ["fake", "new", f"{project.namespace}-1-0000000a"]
        )

    def test_reattaches_live_session(self, runner, project, fakes):
        multiplexer, _ = fakes
        external = f"{project.namespace}-1-0000000a"
        multiplexer.add_session(external)
        with patch("immorterm.cli.os.execvp") as execvp:
            runner.invoke(main, ["attach", "1-0000000a"])
        execvp.assert_called_once_with("fake", ["fake", "attach", external])

    def test_reads_environment(self, runner, project, monkeypatch):
        monkeypatch.setenv(SESSION_ID_ENV, "2-0000000b")
        with patch("immorterm.cli.os.execvp"):
            result = runner.invoke(main, ["attach"])
        assert result.exit_code == 0
        assert [r["id"] for r in _records(project)] == ["2-0000000b"]

    def test_rejects_invalid_id(self, runner, project):
        with patch("immorterm.cli.os.execvp") as execvp:
            result = runner.invoke(main, ["attach", "not-an-id"])
        assert result.exit_code == 1
        execvp.assert_not_called()

    def test_falls_back_to_shell(self, runner, project, fakes, monkeypatch):
        multiplexer, _ = fakes
        multiplexer.available = False
        monkeypatch.setenv("SHELL", "/bin/zsh")
        with patch("immorterm.cli.os.execvp") as execvp:
            runner.invoke(main, ["attach", "1-0000000a"])
        assert execvp.call_args_list[0][0] == ("/bin/zsh", ["/bin/zsh"])


class TestConfigCommands:
    def test_show(self, runner, project):
        result = runner.invoke(main, ["config", "show"])
        assert result.exit_code == 0
        assert "grace-period" in result.output

    def test_show_requires_init(self, runner, tmp_path, fakes):
        with runner.isolated_filesystem(temp_dir=tmp_path):
            result = runner.invoke(main, ["config", "show"])
            assert result.exit_code == 1
            assert "not initialized" in result.output

    def test_set(self, runner, project):
        result = runner.invoke(main, ["config", "set", "grace-period", "5"])
        assert result.exit_code == 0
        assert json.loads(project.config_file.read_text())["grace_period"] == 5.0

    def test_set_unknown_key(self, runner, project):
        result = runner.invoke(main, ["config", "set", "colour", "blue"])
        assert result.exit_code == 1
        assert "Unknown config key" in result.output

    def test_set_invalid_value(self, runner, project):
        result = runner.invoke(main, ["config", "set", "multiplexer", "zellij"])
        assert result.exit_code == 1
        assert json.loads(project.config_file.read_text())["multiplexer"] == "screen"


class TestHelpDocumentation:
    def test_main_help_shows_overview(self, runner):
        result = runner.invoke(main, ["--help"])
        assert result.exit_code == 0
        assert "survive restarts" in result.output
        assert "immorterm run" in result.output
