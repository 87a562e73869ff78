"""Optional answer validation through proxmox-auto-install-assistant."""

from __future__ import annotations

import os
import stat
from pathlib import Path

from pve_autoinstall.logging import LoggerFactory
from pve_autoinstall.storage.devices import run_command

log = LoggerFactory.for_answer()


def validate_with_assistant(answer_path: Path, tool: Path) -> bool:
    """Run ``<tool> validate-answer <answer_path>``.

    A failure is reported as a warning and never stops media creation.
    """
    try:
        mode = tool.stat().st_mode
        if not mode & stat.S_IXUSR:
            os.chmod(tool, mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
        result = run_command([str(tool), "validate-answer", str(answer_path)], check=False)
    except OSError as error:
        log.warning(f"Answer validation skipped: {error}")
        return False
    if result.returncode != 0:
        detail = (result.stderr or result.stdout or "").strip()
        log.warning(f"Answer validation reported problems: {detail}")
        return False
    log.info("Answer file validated")
    return True


def assistant_available(tool: Path | None) -> bool:
    return tool is not None and tool.is_file()
