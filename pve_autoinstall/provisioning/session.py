"""Persistent tmux session running the management CLI."""

from __future__ import annotations

import shlex
import subprocess

from pve_autoinstall.logging import LoggerFactory

from .context import ProvisioningContext

log = LoggerFactory.for_setup()

BANNER = [
    "",
    "  Welcome to Claude Code on Proxmox VE",
    "  =====================================",
    "",
    "  Claude will help you configure your server.",
    "  If not authenticated, run: claude auth login",
    "",
]


def _send(ctx: ProvisioningContext, keys: str) -> None:
    ctx.run(["tmux", "send-keys", "-t", ctx.session_name, keys, "Enter"], log_output=False)


def start_session(ctx: ProvisioningContext) -> str:
    """Tear down any old session, then create a fresh one running the CLI."""
    name = ctx.session_name
    ctx.run(["tmux", "kill-session", "-t", name], check=False, log_output=False)
    log.info(f"Starting {ctx.cli_binary} in tmux session {name}...")
    ctx.run(["tmux", "new-session", "-d", "-s", name, "-n", "main"])
    _send(ctx, "clear")
    for line in BANNER:
        _send(ctx, f"echo {shlex.quote(line)}")
    _send(ctx, ctx.cli_binary)
    return f"session {name} started"


def attach_session(ctx: ProvisioningContext) -> int:
    """Attach the operator's terminal. Returns tmux's exit status."""
    return subprocess.call(["tmux", "attach", "-t", ctx.session_name])
