"""Tests for the deployment runner — triggering, command execution and terminal updates."""

from __future__ import annotations

import subprocess
from datetime import UTC, datetime, timedelta
from unittest.mock import patch

import pytest

from app.errors import NoDeployAction, NotFound, QueueUnavailable
from app.models.pipeline_record import PipelineRecord, PipelineStatus, TriggerSource
from app.services.deployment_runner import (
    DeploymentOutcome,
    DeploymentRunner,
    build_command,
    run_deploy_action,
    truncate_output,
)


def _completed(returncode: int, stdout: str) -> subprocess.CompletedProcess:
    return subprocess.CompletedProcess(args=["bash", "deploy.sh"], returncode=returncode, stdout=stdout)


class TestTruncateOutput:
    def test_short_output_unchanged(self):
        assert truncate_output("ok") == "ok"

    def test_exactly_limit_unchanged(self):
        output = "x" * 500
        assert truncate_output(output) == output

    def test_long_output_truncated_with_ellipsis(self):
        result = truncate_output("y" * 501)
        assert result == "y" * 500 + "..."
        assert len(result) == 503

    def test_empty_output(self):
        assert truncate_output("") == ""


class TestBuildCommand:
    def test_shell_script_runs_under_bash(self):
        assert build_command("deploy.sh --prod") == ["bash", "deploy.sh", "--prod"]

    def test_plain_command(self):
        assert build_command("make deploy ENV='prod eu'") == ["make", "deploy", "ENV=prod eu"]


class TestRunDeployAction:
    def test_success(self):
        started = datetime.now(UTC) - timedelta(seconds=3)
        with patch("app.services.deployment_runner.subprocess.run", return_value=_completed(0, "deployed\n")) as run:
            outcome = run_deploy_action("deploy.sh", started)

        assert outcome.status == PipelineStatus.success
        assert outcome.output == "deployed\n"
        assert outcome.exit_code == 0
        assert outcome.finished_at >= started
        assert outcome.duration >= 3
        args, kwargs = run.call_args
        assert args[0] == ["bash", "deploy.sh"]
        assert kwargs["stderr"] == subprocess.STDOUT
        assert kwargs["timeout"] is None

    def test_nonzero_exit_is_failed(self):
        with patch("app.services.deployment_runner.subprocess.run", return_value=_completed(1, "boom")):
            outcome = run_deploy_action("deploy.sh", datetime.now(UTC))

        assert outcome.status == PipelineStatus.failed
        assert outcome.output == "boom"
        assert outcome.exit_code == 1

    def test_long_output_truncated(self):
        with patch("app.services.deployment_runner.subprocess.run", return_value=_completed(0, "z" * 2000)):
            outcome = run_deploy_action("deploy.sh", datetime.now(UTC))

        assert outcome.output == "z" * 500 + "..."

    def test_missing_executable_is_failed(self):
        with patch("app.services.deployment_runner.subprocess.run", side_effect=FileNotFoundError("no such file")):
            outcome = run_deploy_action("./missing", datetime.now(UTC))

        assert outcome.status == PipelineStatus.failed
        assert "no such file" in outcome.output
        assert outcome.exit_code is None

    def test_timeout_is_failed(self, settings, monkeypatch):
        monkeypatch.setattr(settings, "deploy_timeout_seconds", 5)
        exc = subprocess.TimeoutExpired(cmd=["bash", "deploy.sh"], timeout=5, output=b"partial")
        with patch("app.services.deployment_runner.subprocess.run", side_effect=exc) as run:
            outcome = run_deploy_action("deploy.sh", datetime.now(UTC))

        assert run.call_args.kwargs["timeout"] == 5
        assert outcome.status == PipelineStatus.failed
        assert outcome.output.startswith("partial")
        assert "timed out" in outcome.output

    def test_naive_start_treated_as_utc(self):
        started = datetime.now(UTC).replace(tzinfo=None) - timedelta(seconds=2)
        with patch("app.services.deployment_runner.subprocess.run", return_value=_completed(0, "")):
            outcome = run_deploy_action("deploy.sh", started)

        assert outcome.finished_at.tzinfo is not None
        assert outcome.duration >= 2

    def test_start_in_future_gives_zero_duration(self):
        started = datetime.now(UTC) + timedelta(minutes=5)
        with patch("app.services.deployment_runner.subprocess.run", return_value=_completed(0, "")):
            outcome = run_deploy_action("deploy.sh", started)

        assert outcome.finished_at == started
        assert outcome.duration == 0


class TestOutcomePayload:
    def test_payload_restores_outcome(self):
        outcome = DeploymentOutcome(
            status=PipelineStatus.failed,
            output="boom",
            finished_at=datetime(2026, 1, 2, 3, 4, 5, tzinfo=UTC),
            duration=12,
            exit_code=2,
        )
        assert DeploymentOutcome.from_payload(outcome.to_payload()) == outcome


class TestTriggerDeployment:
    def test_creates_running_record_and_queues_worker(self, db_session, repo_config):
        with patch("app.tasks.deploy.run_deployment.delay") as mock_delay:
            record = DeploymentRunner(db_session).trigger_deployment(repo_config.id)

        assert record.status == PipelineStatus.running
        assert record.trigger_source == TriggerSource.manual
        assert record.author == "System"
        assert record.commit_message == "Manual deployment of app"
        assert record.started_at is not None
        assert record.finished_at is None
        mock_delay.assert_called_once()
        record_id, action, started_at = mock_delay.call_args.args
        assert record_id == record.id
        assert action == "deploy.sh"
        assert datetime.fromisoformat(started_at).tzinfo is not None

    def test_record_committed_before_queueing(self, db_session, repo_config, engine):
        from sqlalchemy.orm import Session

        seen = {}

        def _check_visible(record_id, *_args):
            with Session(engine) as other:
                seen["record"] = other.get(PipelineRecord, record_id)

        with patch("app.tasks.deploy.run_deployment.delay", side_effect=_check_visible):
            DeploymentRunner(db_session).trigger_deployment(repo_config.id)

        assert seen["record"] is not None

    def test_automatic_label(self, db_session, repo_config):
        with patch("app.tasks.deploy.run_deployment.delay"):
            record = DeploymentRunner(db_session).trigger_deployment(
                repo_config.id, trigger_source=TriggerSource.auto, ref="refs/heads/main", commit_sha="abc123"
            )

        assert record.commit_message == "Automatic deployment of app"
        assert record.trigger_source == TriggerSource.auto
        assert record.commit_sha == "abc123"

    def test_unknown_config(self, db_session):
        with patch("app.tasks.deploy.run_deployment.delay") as mock_delay:
            with pytest.raises(NotFound):
                DeploymentRunner(db_session).trigger_deployment(9999)
        mock_delay.assert_not_called()

    def test_missing_action_creates_nothing(self, db_session, repo_config):
        repo_config.deploy_action = "  "
        db_session.commit()

        with patch("app.tasks.deploy.run_deployment.delay") as mock_delay:
            with pytest.raises(NoDeployAction):
                DeploymentRunner(db_session).trigger_deployment(repo_config.id)

        assert db_session.query(PipelineRecord).count() == 0
        mock_delay.assert_not_called()

    def test_queue_failure_marks_record_failed(self, db_session, repo_config):
        with patch("app.tasks.deploy.run_deployment.delay", side_effect=ConnectionError("broker down")):
            with pytest.raises(QueueUnavailable):
                DeploymentRunner(db_session).trigger_deployment(repo_config.id)

        record = db_session.query(PipelineRecord).one()
        assert record.status == PipelineStatus.failed
        assert record.finished_at is not None
        assert record.commit_message == "Failed to queue deployment: broker down"


class TestApplyOutcome:
    def _running(self, db_session, repo_config) -> PipelineRecord:
        with patch("app.tasks.deploy.run_deployment.delay"):
            return DeploymentRunner(db_session).trigger_deployment(repo_config.id)

    def _outcome(self, status=PipelineStatus.success, output="done") -> DeploymentOutcome:
        return DeploymentOutcome(status=status, output=output, finished_at=datetime.now(UTC), duration=4, exit_code=0)

    def test_writes_terminal_state(self, db_session, repo_config):
        record = self._running(db_session, repo_config)

        applied = DeploymentRunner(db_session).apply_outcome(record.id, self._outcome())
        db_session.commit()

        refreshed = db_session.get(PipelineRecord, record.id)
        assert applied is True
        assert refreshed.status == PipelineStatus.success
        assert refreshed.duration == 4
        assert refreshed.commit_message == "done"
        assert refreshed.finished_at is not None

    def test_only_one_terminal_transition(self, db_session, repo_config):
        record = self._running(db_session, repo_config)
        runner = DeploymentRunner(db_session)

        assert runner.apply_outcome(record.id, self._outcome(PipelineStatus.failed, "first")) is True
        assert runner.apply_outcome(record.id, self._outcome(PipelineStatus.success, "second")) is False
        db_session.commit()

        refreshed = db_session.get(PipelineRecord, record.id)
        assert refreshed.status == PipelineStatus.failed
        assert refreshed.commit_message == "first"

    def test_missing_record(self, db_session):
        assert DeploymentRunner(db_session).apply_outcome(4242, self._outcome()) is False

    def test_rejects_non_terminal_status(self, db_session, repo_config):
        record = self._running(db_session, repo_config)
        with pytest.raises(ValueError):
            DeploymentRunner(db_session).apply_outcome(record.id, self._outcome(PipelineStatus.canceled))
