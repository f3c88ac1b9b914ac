"""Tests for the CLI entrypoint."""

import json
from unittest.mock import MagicMock, patch

import pytest
from click.testing import CliRunner

from convergent.cli import main
from convergent.errors import ApplyError, CycleError
from convergent.models import (
    ChangeDescriptor,
    ChangeKind,
    FieldDelta,
    RunResult,
    TaskFailure,
    TaskOutcome,
    TaskState,
)
from tests.fakes import FakeDeletion


@pytest.fixture
def runner():
    return CliRunner()


@pytest.fixture
def manifest(tmp_path):
    path = tmp_path / "manifest.json"
    path.write_text(
        json.dumps(
            {
                "vpcs": [{"name": "main", "cidr": "10.0.0.0/16"}],
                "security_groups": [{"name": "web", "vpc": "main", "removal_rules": ["port=22"]}],
            }
        )
    )
    return str(path)


def _change():
    return ChangeDescriptor(
        "main",
        "VPC",
        ChangeKind.CREATE,
        (FieldDelta("cidr", "10.0.0.0/16", None),),
    )


def _result(changed=False, failed=False):
    change = _change() if changed else ChangeDescriptor.no_change("main", "VPC")
    outcomes = {
        "main": TaskOutcome(
            name="main",
            state=TaskState.FAILED if failed else TaskState.SUCCEEDED,
            change=None if failed else change,
        )
    }
    failures = [TaskFailure("main", ApplyError("main", "quota exceeded"))] if failed else []
    return RunResult(outcomes=outcomes, failures=failures, skipped=[])


def _fake_run(result, render=()):
    """A run_tasks stand-in that records ``render`` on the run's target."""

    def run(ctx, tasks):
        for change in render:
            ctx.target.render(ctx, MagicMock(), None, change)
        return result

    return run


@patch("convergent.cli.run_tasks")
@patch("convergent.cli.EC2Client")
def test_plan_no_changes_exit_0(mock_client_cls, mock_run, runner, manifest):
    mock_run.side_effect = _fake_run(_result())

    result = runner.invoke(main, ["plan", manifest, "--detailed-exitcode"])

    assert result.exit_code == 0
    assert "No changes." in result.output


@patch("convergent.cli.run_tasks")
@patch("convergent.cli.EC2Client")
def test_plan_changes_detailed_exit_1(mock_client_cls, mock_run, runner, manifest):
    mock_run.side_effect = _fake_run(_result(changed=True), render=[_change()])

    result = runner.invoke(main, ["plan", manifest, "--detailed-exitcode"])

    assert result.exit_code == 1
    assert "main" in result.output


@patch("convergent.cli.run_tasks")
@patch("convergent.cli.EC2Client")
def test_plan_changes_default_exit_0(mock_client_cls, mock_run, runner, manifest):
    mock_run.side_effect = _fake_run(_result(changed=True), render=[_change()])

    result = runner.invoke(main, ["plan", manifest])

    assert result.exit_code == 0


@patch("convergent.cli.run_tasks")
@patch("convergent.cli.EC2Client")
def test_plan_failure_exit_2(mock_client_cls, mock_run, runner, manifest):
    mock_run.side_effect = _fake_run(_result(failed=True))

    result = runner.invoke(main, ["plan", manifest, "--format", "markdown"])

    assert result.exit_code == 2
    assert "quota exceeded" in result.output


@patch("convergent.cli.run_tasks")
@patch("convergent.cli.EC2Client")
def test_plan_json_format(mock_client_cls, mock_run, runner, manifest):
    mock_run.side_effect = _fake_run(_result(changed=True), render=[_change()])

    result = runner.invoke(main, ["plan", manifest, "--format", "json"])

    assert result.exit_code == 0
    assert json.loads(result.stdout)["changes"][0]["task"] == "main"


@patch("convergent.cli.run_tasks")
@patch("convergent.cli.EC2Client")
def test_plan_redact_values(mock_client_cls, mock_run, runner, manifest):
    mock_run.side_effect = _fake_run(_result(changed=True), render=[_change()])

    result = runner.invoke(main, ["plan", manifest, "--format", "json", "--redact-values"])

    assert "[REDACTED]" in result.output
    assert "10.0.0.0/16" not in result.output


@patch("convergent.cli.run_tasks")
@patch("convergent.cli.EC2Client")
def test_plan_passes_run_options(mock_client_cls, mock_run, runner, manifest):
    mock_run.side_effect = _fake_run(_result())

    runner.invoke(
        main,
        [
            "plan",
            manifest,
            "--max-concurrent",
            "5",
            "--timeout",
            "30",
            "--tolerate-skipped",
            "--region",
            "eu-west-1",
        ],
    )

    ctx, tasks = mock_run.call_args[0]
    assert ctx.options.max_workers == 5
    assert ctx.options.timeout == 30
    assert ctx.options.tolerate_skipped_dependencies is True
    assert set(tasks) == {"main", "web"}
    mock_client_cls.assert_called_once_with(region="eu-west-1")


@patch("convergent.cli.run_tasks")
@patch("convergent.cli.EC2Client")
def test_max_concurrent_capped(mock_client_cls, mock_run, runner, manifest):
    result = runner.invoke(main, ["plan", manifest, "--max-concurrent", "100"])

    assert result.exit_code != 0
    assert "100 is not in the range 1<=x<=50" in result.output
    mock_run.assert_not_called()


@patch("convergent.cli.run_tasks")
@patch("convergent.cli.EC2Client")
def test_configuration_error_exit_2(mock_client_cls, mock_run, runner, manifest):
    mock_run.side_effect = CycleError(["a", "b", "a"])

    result = runner.invoke(main, ["plan", manifest])

    assert result.exit_code == 2
    assert "Dependency cycle detected: a -> b -> a" in result.output


@patch("convergent.cli.EC2Client")
def test_invalid_manifest_exit_2(mock_client_cls, runner, tmp_path):
    path = tmp_path / "manifest.json"
    path.write_text(json.dumps({"vpcs": [{"name": "main", "lifecycle": "Never"}]}))

    result = runner.invoke(main, ["plan", str(path)])

    assert result.exit_code == 2
    assert "unknown lifecycle" in result.output


@patch("convergent.cli.run_deletions")
@patch("convergent.cli.collect_deletions")
@patch("convergent.cli.run_tasks")
@patch("convergent.cli.EC2Client")
def test_plan_prune_lists_deletions(
    mock_client_cls, mock_run, mock_collect, mock_run_deletions, runner, manifest
):
    mock_run.side_effect = _fake_run(_result())
    mock_collect.return_value = [FakeDeletion("web/ingress/tcp/22-22")]

    def record(ctx, deletions):
        for deletion in deletions:
            ctx.target.delete(ctx, deletion)
        return _result()

    mock_run_deletions.side_effect = record

    result = runner.invoke(main, ["plan", manifest, "--prune", "--detailed-exitcode"])

    assert result.exit_code == 1
    assert "web/ingress/tcp/22-22" in result.output


@patch("convergent.cli.collect_deletions")
@patch("convergent.cli.run_tasks")
@patch("convergent.cli.EC2Client")
def test_prune_skipped_after_failed_run(mock_client_cls, mock_run, mock_collect, runner, manifest):
    mock_run.side_effect = _fake_run(_result(failed=True))

    result = runner.invoke(main, ["plan", manifest, "--prune"])

    assert result.exit_code == 2
    mock_collect.assert_not_called()


@patch("convergent.cli.post_to_slack")
@patch("convergent.cli.run_tasks")
@patch("convergent.cli.EC2Client")
def test_plan_post_slack(mock_client_cls, mock_run, mock_slack, runner, manifest, monkeypatch):
    monkeypatch.setenv("CONVERGENT_SLACK_WEBHOOK", "https://hooks.slack.com/services/T00/B00/xxx")
    mock_run.side_effect = _fake_run(_result(changed=True), render=[_change()])

    runner.invoke(main, ["plan", manifest, "--post-slack"])

    mock_slack.assert_called_once()
    assert mock_slack.call_args[1]["webhook_url"].startswith("https://hooks.slack.com/")


@patch("convergent.cli.post_to_slack")
@patch("convergent.cli.run_tasks")
@patch("convergent.cli.EC2Client")
def test_plan_post_slack_requires_webhook(
    mock_client_cls, mock_run, mock_slack, runner, manifest, monkeypatch
):
    monkeypatch.delenv("CONVERGENT_SLACK_WEBHOOK", raising=False)
    mock_run.side_effect = _fake_run(_result())

    result = runner.invoke(main, ["plan", manifest, "--post-slack"])

    assert result.exit_code == 2
    assert "CONVERGENT_SLACK_WEBHOOK" in result.output
    mock_slack.assert_not_called()


@patch("convergent.cli.post_to_github_pr")
@patch("convergent.cli.run_tasks")
@patch("convergent.cli.EC2Client")
def test_plan_post_github_pr(mock_client_cls, mock_run, mock_gh, runner, manifest, monkeypatch):
    monkeypatch.setenv("GITHUB_TOKEN", "test-token-not-real")
    monkeypatch.setenv("GITHUB_REPO", "acme/network")
    mock_run.side_effect = _fake_run(_result(changed=True), render=[_change()])

    runner.invoke(main, ["plan", manifest, "--post-github-pr", "42"])

    mock_gh.assert_called_once()
    call_kwargs = mock_gh.call_args[1]
    assert call_kwargs["pr_number"] == 42
    assert call_kwargs["repo"] == "acme/network"


@patch("convergent.cli.run_tasks")
@patch("convergent.cli.EC2Client")
def test_apply_success(mock_client_cls, mock_run, runner, manifest):
    mock_run.side_effect = _fake_run(_result(changed=True))

    result = runner.invoke(main, ["apply", manifest, "--format", "markdown"])

    assert result.exit_code == 0
    assert "## Apply: 1 change(s)" in result.output
    ctx = mock_run.call_args[0][0]
    assert type(ctx.target).__name__ == "APITarget"


@patch("convergent.cli.run_tasks")
@patch("convergent.cli.EC2Client")
def test_apply_failure_exit_2(mock_client_cls, mock_run, runner, manifest):
    mock_run.side_effect = _fake_run(_result(failed=True))

    result = runner.invoke(main, ["apply", manifest])

    assert result.exit_code == 2


@patch("convergent.cli.run_deletions")
@patch("convergent.cli.collect_deletions")
@patch("convergent.cli.run_tasks")
@patch("convergent.cli.EC2Client")
def test_apply_prune_failure_exit_2(
    mock_client_cls, mock_run, mock_collect, mock_run_deletions, runner, manifest
):
    mock_run.side_effect = _fake_run(_result())
    mock_collect.return_value = [FakeDeletion("web/ingress/tcp/22-22")]
    mock_run_deletions.return_value = _result(failed=True)

    result = runner.invoke(main, ["apply", manifest, "--prune"])

    assert result.exit_code == 2
    assert "Deletion failed" in result.output
    mock_run_deletions.assert_called_once()


def test_check_rule(runner):
    result = runner.invoke(main, ["check-rule", "port=22", "port=8000:8080"])

    assert result.exit_code == 0
    assert "port=22: port=22:22" in result.output
    assert "port=8000:8080: port=8000:8080" in result.output


def test_check_rule_invalid(runner):
    result = runner.invoke(main, ["check-rule", "port=22", "port=ssh"])

    assert result.exit_code == 2
    assert "Cannot parse removal rule 'port=ssh'" in result.output


def test_config_file(runner, manifest, tmp_path):
    config = tmp_path / "convergent.json"
    config.write_text(json.dumps({"max_concurrent": 3}))

    with (
        patch("convergent.cli.EC2Client"),
        patch("convergent.cli.run_tasks", side_effect=_fake_run(_result())) as mock_run,
    ):
        runner.invoke(main, ["--config", str(config), "plan", manifest])

    assert mock_run.call_args[0][0].options.max_workers == 3
