"""Sentinel-guarded additions to the root shell profile."""

from __future__ import annotations

from pathlib import Path

from pve_autoinstall.config.settings import SHELL_SENTINEL
from pve_autoinstall.logging import LoggerFactory

log = LoggerFactory.for_setup()


def render_shell_block(session: str = "claude", cli_binary: str = "claude") -> str:
    return f"""
{SHELL_SENTINEL}
alias c='{cli_binary}'
alias tm='tmux attach -t {session} || tmux new -s {session}'
alias vmlist='qm list'
alias ctlist='pct list'
alias logs='journalctl -f'

# Show session hint on login
if [ -n "$PS1" ]; then
    if tmux has-session -t {session} 2>/dev/null; then
        echo ""
        echo "  {cli_binary} is running. Attach with: tm"
        echo ""
    fi
fi
"""


def configure_shell(profile: Path, session: str = "claude", cli_binary: str = "claude") -> bool:
    """Append the block once. Returns True if the profile was changed."""
    existing = profile.read_text(encoding="utf-8") if profile.exists() else ""
    if SHELL_SENTINEL in existing:
        log.info("Shell already configured")
        return False
    with open(profile, "a", encoding="utf-8") as handle:
        if existing and not existing.endswith("\n"):
            handle.write("\n")
        handle.write(render_shell_block(session, cli_binary))
    log.info("Shell aliases added")
    return True
