"""Tests for the first-boot step runner and its failure policy."""

import subprocess
from unittest.mock import Mock, patch

import pytest

from pve_autoinstall.domain import StepOutcome
from pve_autoinstall.provisioning import network, steps
from pve_autoinstall.provisioning.steps import Step, StepWarning

ALL_STEPS = [step.name for step in steps.STEPS]


@pytest.fixture
def healthy_host(provisioning_ctx, fake_runner):
    """A host where every command works and the CLI appears after npm."""
    provisioning_ctx.which.side_effect = lambda name: (
        f"/usr/bin/{name}" if name == "claude" and fake_runner.ran("npm") else None
    )
    fake_runner.respond(["ip", "route", "get"], stdout="1.0.0.0 via 10.0.0.1 dev vmbr0 src 10.0.0.5")
    fake_runner.respond(["ip", "route", "show"], stdout="default via 10.0.0.1 dev vmbr0")
    with patch.object(network, "https_reachable", return_value=True), patch.object(
        steps, "attach_session", return_value=0
    ) as attach:
        provisioning_ctx.attach = attach
        yield provisioning_ctx


def _outcomes(run):
    return {result.name: result.outcome for result in run.results}


class TestStepOrder:
    def test_names(self):
        assert ALL_STEPS == [
            "network-wait",
            "connectivity-test",
            "repository-config",
            "dependency-install",
            "runtime-install",
            "management-cli",
            "shell-config",
            "session-start",
        ]

    def test_only_cli_and_session_are_hard(self):
        assert [s.name for s in steps.STEPS if s.hard] == ["management-cli", "session-start"]


class TestRunStep:
    def test_success_detail(self, provisioning_ctx):
        result = steps.run_step(Step("x", "X", lambda ctx: "done"), provisioning_ctx)
        assert result.outcome is StepOutcome.SUCCESS
        assert result.detail == "done"

    def test_warning_is_soft(self, provisioning_ctx):
        def warn(ctx):
            raise StepWarning("slow network")

        result = steps.run_step(Step("x", "X", warn, hard=True), provisioning_ctx)
        assert result.outcome is StepOutcome.SOFT_FAILURE

    @pytest.mark.parametrize("hard, expected", [(False, StepOutcome.SOFT_FAILURE), (True, StepOutcome.HARD_FAILURE)])
    def test_error_policy(self, provisioning_ctx, hard, expected):
        def fail(ctx):
            raise subprocess.CalledProcessError(1, ["npm", "install"], stderr="E404")

        result = steps.run_step(Step("x", "X", fail, hard=hard), provisioning_ctx)
        assert result.outcome is expected
        assert result.detail == "npm install exited with 1: E404"

    def test_unexpected_errors_propagate(self, provisioning_ctx):
        def broken(ctx):
            raise KeyError("bug")

        with pytest.raises(KeyError):
            steps.run_step(Step("x", "X", broken), provisioning_ctx)


class TestRunFirstBoot:
    """Tests for run_first_boot() against a fake host."""

    def test_auto_run_succeeds(self, healthy_host, fake_runner):
        run = steps.run_first_boot(healthy_host)
        assert [r.name for r in run.results] == ALL_STEPS
        assert set(_outcomes(run).values()) == {StepOutcome.SUCCESS}
        assert run.succeeded
        assert fake_runner.ran("tmux", "new-session")
        healthy_host.attach.assert_not_called()

    def test_interactive_skips_wait_and_attaches(self, healthy_host):
        healthy_host.auto = False
        run = steps.run_first_boot(healthy_host)
        assert run.outcome_of("network-wait") is StepOutcome.SKIPPED
        healthy_host.sleep.assert_called_with(healthy_host.attach_delay_seconds)
        healthy_host.attach.assert_called_once_with(healthy_host)

    def test_cli_failure_aborts(self, healthy_host, fake_runner):
        fake_runner.respond(["npm"], returncode=1)
        run = steps.run_first_boot(healthy_host)
        outcomes = _outcomes(run)
        assert outcomes["management-cli"] is StepOutcome.HARD_FAILURE
        assert outcomes["shell-config"] is StepOutcome.SKIPPED
        assert outcomes["session-start"] is StepOutcome.SKIPPED
        assert run.aborted
        assert not healthy_host.bashrc.exists()
        assert not fake_runner.ran("tmux", "new-session")

    def test_auto_abort_reports_retry_on_next_boot(self, healthy_host, fake_runner):
        fake_runner.respond(["npm"], returncode=1)
        errors = []
        with patch.object(steps, "log", Mock(error=errors.append)):
            steps.run_first_boot(healthy_host)
        assert any("was not created" in line and "next boot" in line for line in errors)
        assert not any("will still be created" in line for line in errors)

    def test_session_failure_aborts(self, healthy_host, fake_runner):
        fake_runner.respond(["tmux", "new-session"], returncode=1)
        run = steps.run_first_boot(healthy_host)
        assert run.outcome_of("session-start") is StepOutcome.HARD_FAILURE
        assert run.aborted

    def test_runtime_failure_is_soft(self, healthy_host, fake_runner):
        fake_runner.respond(["apt-get", "install", "-y", "-qq", "nodejs"], returncode=100)
        run = steps.run_first_boot(healthy_host)
        assert run.outcome_of("runtime-install") is StepOutcome.SOFT_FAILURE
        assert run.outcome_of("management-cli") is StepOutcome.SUCCESS
        assert run.succeeded

    def test_offline_host_warns_and_continues(self, healthy_host, fake_runner):
        fake_runner.respond(["ping"], returncode=1)
        with patch.object(network, "https_reachable", return_value=False):
            run = steps.run_first_boot(healthy_host)
        assert run.outcome_of("network-wait") is StepOutcome.SOFT_FAILURE
        assert run.outcome_of("connectivity-test") is StepOutcome.SOFT_FAILURE
        assert run.outcome_of("repository-config") is StepOutcome.SUCCESS

    def test_two_passing_checks_are_enough(self, healthy_host, fake_runner):
        fake_runner.respond(["ping", "-c", "1", "-W", "2", "google.com"], returncode=1)
        with patch.object(network, "https_reachable", return_value=False):
            run = steps.run_first_boot(healthy_host)
        assert run.outcome_of("connectivity-test") is StepOutcome.SUCCESS


class TestReportCompletion:
    def test_unknown_ip_placeholder(self, provisioning_ctx):
        messages = []
        with patch.object(steps, "log", Mock(info=messages.append)):
            steps.report_completion(provisioning_ctx)
        assert "Proxmox Web UI:  https://<host-ip>:8006" in messages
        assert "Claude Session:  tmux attach -t claude" in messages
