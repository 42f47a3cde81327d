"""Tests for the CLI module."""

import json
from unittest.mock import patch

import pytest
from click.testing import CliRunner

from batchprompt.cli import main
from batchprompt.store import SQLiteJobStore
from batchprompt.transport import TransportError


@pytest.fixture
def runner(jobs_db_path, monkeypatch):
    """CLI runner using a temporary jobs database."""
    monkeypatch.setenv("BATCHPROMPT_JOBS_DB", str(jobs_db_path))
    monkeypatch.delenv("BATCHPROMPT_JOBS_URL", raising=False)
    return CliRunner()


class TestCLI:
    """Test top-level CLI behaviour."""

    def test_main_help(self, runner):
        result = runner.invoke(main, ["--help"])
        assert result.exit_code == 0
        assert "batchprompt" in result.output
        assert "many local projects" in result.output

    def test_invalid_timeout_is_usage_error(self, runner, monkeypatch):
        monkeypatch.setenv("BATCHPROMPT_TIMEOUT", "soon")
        result = runner.invoke(main, ["jobs", "list"])
        assert result.exit_code == 2
        assert "BATCHPROMPT_TIMEOUT" in result.output
        assert "Traceback" not in result.output

    def test_version(self, runner):
        result = runner.invoke(main, ["--version"])
        assert result.exit_code == 0
        assert "0.1.0" in result.output


class TestRunCommand:
    """Test the run command against a scripted stream."""

    def test_run_prints_progress_and_summary(self, runner, project_dirs, scripted_transport, frame):
        alpha, beta = (str(p) for p in project_dirs)
        transport = scripted_transport(
            [
                frame({"type": "pre-check", "project": beta, "skipped": True}),
                frame({"type": "start", "project": alpha}),
                frame({"type": "content", "project": alpha, "text": "All tests pass."}),
                frame({"type": "complete", "project": alpha}),
            ]
        )

        with patch("batchprompt.cli.HttpTransport", return_value=transport):
            result = runner.invoke(main, ["run", "refactor", alpha, beta, "--show-output"])

        assert result.exit_code == 0, result.output
        assert "skipped" in result.output
        assert "alpha" in result.output
        assert "Outcome: complete" in result.output
        assert "All tests pass." in result.output
        assert transport.requests[0].project_paths == [alpha, beta]

    def test_run_raw_outputs_snapshot_json(self, runner, project_dirs, scripted_transport, frame):
        alpha, beta = (str(p) for p in project_dirs)
        transport = scripted_transport(
            [
                frame({"type": "start", "project": alpha}),
                frame({"type": "complete", "project": alpha, "needsHuman": True}),
                frame({"type": "error", "project": beta, "error": "timeout"}),
            ]
        )

        with patch("batchprompt.cli.HttpTransport", return_value=transport):
            result = runner.invoke(main, ["run", "refactor", alpha, beta, "--raw"])

        assert result.exit_code == 0, result.output
        data = json.loads(result.output)
        assert data["outcome"] == "error"
        assert [p["status"] for p in data["projects"]] == ["complete", "error"]
        assert data["projects"][1]["error"] == "timeout"

    def test_transport_failure_exits_1(self, runner, project_dirs, scripted_transport):
        alpha, beta = (str(p) for p in project_dirs)
        transport = scripted_transport(error=TransportError("connection reset"))

        with patch("batchprompt.cli.HttpTransport", return_value=transport):
            result = runner.invoke(main, ["run", "refactor", alpha, beta])

        assert result.exit_code == 1
        assert "Transport failed" in result.output

    def test_save_as_persists_job(self, runner, project_dirs, scripted_transport, jobs_db_path):
        alpha, beta = (str(p) for p in project_dirs)

        with patch("batchprompt.cli.HttpTransport", return_value=scripted_transport()):
            result = runner.invoke(main, ["run", "refactor", alpha, beta, "--save-as", "nightly"])

        assert result.exit_code == 0, result.output
        jobs = SQLiteJobStore(jobs_db_path).list()
        assert [job.name for job in jobs] == ["nightly"]
        assert jobs[0].project_paths == [alpha, beta]

    def test_save_failure_runs_nothing(self, runner, project_dirs, scripted_transport, tmp_path, monkeypatch):
        alpha, beta = (str(p) for p in project_dirs)
        blocker = tmp_path / "blocker"
        blocker.write_text("")
        monkeypatch.setenv("BATCHPROMPT_JOBS_DB", str(blocker / "jobs.db"))
        transport = scripted_transport()

        with patch("batchprompt.cli.HttpTransport", return_value=transport):
            result = runner.invoke(main, ["run", "refactor", alpha, beta, "--save-as", "nightly"])

        assert result.exit_code == 1
        assert "nothing was run" in result.output
        assert transport.requests == []

    def test_blank_prompt_is_usage_error(self, runner, project_dirs, scripted_transport):
        with patch("batchprompt.cli.HttpTransport", return_value=scripted_transport()):
            result = runner.invoke(main, ["run", "   ", str(project_dirs[0])])
        assert result.exit_code == 2

    def test_run_options_sent_to_backend(self, runner, project_dirs, scripted_transport):
        alpha = str(project_dirs[0])
        transport = scripted_transport()

        with patch("batchprompt.cli.HttpTransport", return_value=transport):
            result = runner.invoke(
                main,
                [
                    "run", "lint", alpha,
                    "--backend", "codex",
                    "--pre-check", "ruff check -q .",
                    "--skip-if", "empty",
                    "--max-parallel", "2",
                ],
            )

        assert result.exit_code == 0, result.output
        request = transport.requests[0]
        assert request.backend.value == "codex"
        assert request.pre_check.command == "ruff check -q ."
        assert request.max_parallel == 2

    def test_pattern_without_pre_check_rejected(self, runner, project_dirs):
        result = runner.invoke(main, ["run", "lint", str(project_dirs[0]), "--pattern", "x"])
        assert result.exit_code == 2

    def test_missing_directory_rejected(self, runner, tmp_path):
        result = runner.invoke(main, ["run", "refactor", str(tmp_path / "nope")])
        assert result.exit_code == 2


class TestJobsCommands:
    """Test saved job management."""

    def test_create_and_list(self, runner, project_dirs):
        alpha = str(project_dirs[0])

        created = runner.invoke(main, ["jobs", "create", "deps", "bump deps", alpha, "--trigger", "on-login"])
        assert created.exit_code == 0, created.output
        assert "Saved job 'deps'" in created.output

        listed = runner.invoke(main, ["jobs", "list"])
        assert listed.exit_code == 0
        assert "deps" in listed.output
        assert "[on-login]" in listed.output

    def test_create_with_pre_check(self, runner, project_dirs, jobs_db_path):
        alpha = str(project_dirs[0])

        result = runner.invoke(
            main,
            ["jobs", "create", "deps", "bump", alpha, "--pre-check", "npm outdated", "--skip-if", "empty"],
        )

        assert result.exit_code == 0, result.output
        job = SQLiteJobStore(jobs_db_path).list()[0]
        assert job.pre_check.command == "npm outdated"
        assert job.backend.value == "claude"

    def test_list_empty(self, runner):
        result = runner.invoke(main, ["jobs", "list"])
        assert result.exit_code == 0
        assert "No jobs found" in result.output

    def test_list_raw(self, runner, jobs_db_path):
        from batchprompt.schemas import JobDefinition

        SQLiteJobStore(jobs_db_path).create(JobDefinition(name="deps", prompt="p", project_paths=["/a"]))

        result = runner.invoke(main, ["jobs", "list", "--raw"])
        assert result.exit_code == 0
        assert json.loads(result.output)[0]["projectPaths"] == ["/a"]

    def test_delete(self, runner, jobs_db_path):
        from batchprompt.schemas import JobDefinition

        job_id = SQLiteJobStore(jobs_db_path).create(JobDefinition(name="deps", prompt="p", project_paths=["/a"]))

        result = runner.invoke(main, ["jobs", "delete", job_id, "--yes"])
        assert result.exit_code == 0
        assert SQLiteJobStore(jobs_db_path).list() == []

    def test_delete_missing(self, runner):
        result = runner.invoke(main, ["jobs", "delete", "job_missing", "--yes"])
        assert result.exit_code == 1

    def test_run_saved_job(self, runner, jobs_db_path, scripted_transport, frame):
        from batchprompt.schemas import JobDefinition

        job_id = SQLiteJobStore(jobs_db_path).create(
            JobDefinition(name="deps", prompt="bump deps", project_paths=["/x"])
        )
        transport = scripted_transport(
            [frame({"type": "start", "project": "/x"}), frame({"type": "complete", "project": "/x"})]
        )

        with patch("batchprompt.cli.HttpTransport", return_value=transport):
            result = runner.invoke(main, ["jobs", "run", job_id])

        assert result.exit_code == 0, result.output
        assert "Job: deps" in result.output
        assert transport.requests[0].prompt == "bump deps"

        recorded = SQLiteJobStore(jobs_db_path).get(job_id)
        assert recorded.status.value == "idle"
        assert recorded.last_run is not None

    def test_run_missing_job(self, runner):
        result = runner.invoke(main, ["jobs", "run", "job_missing"])
        assert result.exit_code == 1
        assert "Job not found" in result.output


class TestServeCommand:
    @patch("uvicorn.run")
    def test_serve_starts_uvicorn(self, mock_run, runner):
        result = runner.invoke(main, ["serve", "--port", "9001"])
        assert result.exit_code == 0
        mock_run.assert_called_once_with("batchprompt.broker:app", host="127.0.0.1", port=9001, reload=False)
