"""First-boot provisioning run.

Steps run in a fixed order, each with a failure policy:

    network-wait          soft   auto mode only; timeout is a warning
    connectivity-test     soft   warns when fewer than 2 of 4 checks pass
    repository-config     soft
    dependency-install    soft
    runtime-install       soft   logged as an error; the CLI step reports the fallout
    management-cli        hard   aborts the run
    shell-config          soft
    session-start         hard   aborts the run
    completion-report     -      access details, attach when interactive

Once a hard step fails every later step is recorded as skipped. The run
never checks the setup-done marker itself; the one-shot unit owns that.
"""

from __future__ import annotations

import subprocess
from dataclasses import dataclass
from typing import Callable

from pve_autoinstall.config.settings import SETUP_DONE_MARKER
from pve_autoinstall.domain import ProvisioningRun, StepOutcome, StepResult
from pve_autoinstall.logging import LoggerFactory

from .context import ProvisioningContext
from .network import get_primary_ip, run_connectivity_checks, wait_for_network
from .packages import ensure_cli, ensure_runtime, install_dependencies
from .repos import configure_repositories
from .session import attach_session, start_session
from .shell import configure_shell

log = LoggerFactory.for_setup()

MIN_PASSING_CHECKS = 2

STEP_ERRORS = (subprocess.CalledProcessError, OSError, RuntimeError)


class StepWarning(Exception):
    """A step completed but its result is a soft failure."""


@dataclass(frozen=True)
class Step:
    name: str
    title: str
    action: Callable[[ProvisioningContext], str]
    hard: bool = False
    auto_only: bool = False


def _network_wait(ctx: ProvisioningContext) -> str:
    if not wait_for_network(ctx):
        raise StepWarning(
            f"network not reachable after {ctx.network_wait_seconds}s, continuing anyway"
        )
    return "network reachable"


def _connectivity(ctx: ProvisioningContext) -> str:
    checks = run_connectivity_checks(ctx)
    passed = sum(1 for check in checks if check.passed)
    summary = f"{passed}/{len(checks)} connectivity checks passed"
    if passed < MIN_PASSING_CHECKS:
        raise StepWarning(summary)
    return summary


def _shell(ctx: ProvisioningContext) -> str:
    changed = configure_shell(ctx.bashrc, ctx.session_name, ctx.cli_binary)
    return "profile updated" if changed else "already configured"


STEPS = (
    Step("network-wait", "Waiting for Network", _network_wait, auto_only=True),
    Step("connectivity-test", "Testing Network Connectivity", _connectivity),
    Step("repository-config", "Configuring Repositories", configure_repositories),
    Step("dependency-install", "Installing Dependencies", install_dependencies),
    Step("runtime-install", "Installing Node.js", ensure_runtime),
    Step("management-cli", "Installing Claude Code", ensure_cli, hard=True),
    Step("shell-config", "Configuring Shell", _shell),
    Step("session-start", "Starting Claude Code Session", start_session, hard=True),
)


def _describe(error: Exception) -> str:
    if isinstance(error, subprocess.CalledProcessError):
        stderr = (error.stderr or "").strip()
        return f"{' '.join(map(str, error.cmd))} exited with {error.returncode}" + (
            f": {stderr}" if stderr else ""
        )
    return str(error)


def run_step(step: Step, ctx: ProvisioningContext) -> StepResult:
    log.log("STEP", step.title)
    try:
        detail = step.action(ctx)
    except StepWarning as warning:
        log.warning(str(warning))
        return StepResult(step.name, StepOutcome.SOFT_FAILURE, str(warning))
    except STEP_ERRORS as error:
        detail = _describe(error)
        if step.hard:
            log.error(f"{step.title} failed: {detail}")
            return StepResult(step.name, StepOutcome.HARD_FAILURE, detail)
        log.error(f"{step.title} failed, continuing: {detail}")
        return StepResult(step.name, StepOutcome.SOFT_FAILURE, detail)
    return StepResult(step.name, StepOutcome.SUCCESS, detail)


def report_completion(ctx: ProvisioningContext) -> None:
    ip = get_primary_ip(ctx) or "<host-ip>"
    log.success("First Boot Setup Complete!")
    log.info(f"Proxmox Web UI:  https://{ip}:{ctx.web_ui_port}")
    log.info(f"SSH:             ssh root@{ip}")
    log.info(f"Claude Session:  tmux attach -t {ctx.session_name}")
    log.info("Quick attach:    tm")
    log.info(f"If {ctx.cli_binary} needs authentication, attach and run: {ctx.cli_binary} auth login")


def run_first_boot(ctx: ProvisioningContext) -> ProvisioningRun:
    """Execute every step in order and return the recorded outcomes."""
    run = ProvisioningRun(auto=ctx.auto)
    mode = "automatic" if ctx.auto else "interactive"
    log.info(f"Proxmox VE first boot setup ({mode} mode)")

    for step in STEPS:
        if run.aborted:
            run.record(StepResult(step.name, StepOutcome.SKIPPED, "earlier hard failure"))
            continue
        if step.auto_only and not ctx.auto:
            run.record(StepResult(step.name, StepOutcome.SKIPPED, "interactive mode"))
            continue
        run.record(run_step(step, ctx))

    if run.aborted:
        failed = [r.name for r in run.results if r.outcome is StepOutcome.HARD_FAILURE]
        log.error(f"Setup aborted at {', '.join(failed)}; re-run manually once fixed")
        if ctx.auto:
            log.error(
                f"{SETUP_DONE_MARKER} was not created; the one-shot unit stays enabled "
                "and retries on the next boot"
            )
        return run

    report_completion(ctx)
    if ctx.auto:
        log.info(f"Session left detached; attach later with: tmux attach -t {ctx.session_name}")
    else:
        log.info(f"Attaching to session in {ctx.attach_delay_seconds} seconds...")
        log.info("Press Ctrl+C to skip, or Ctrl+B then D to detach later")
        ctx.sleep(ctx.attach_delay_seconds)
        attach_session(ctx)
    return run
