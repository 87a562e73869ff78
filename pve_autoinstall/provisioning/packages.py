"""Utility packages, the Node.js runtime and the management CLI."""

from __future__ import annotations

import os
import re
from typing import Optional

from pve_autoinstall.logging import LoggerFactory

from .context import RUNTIME_SETUP_URL, ProvisioningContext

log = LoggerFactory.for_setup()

_LEADING_NUMBER = re.compile(r"^\D*(\d+)")

APT_ENV = {**os.environ, "DEBIAN_FRONTEND": "noninteractive"}


def parse_major(version: str) -> Optional[int]:
    """Leading numeric component of a version string (``v20.11.1`` -> 20)."""
    match = _LEADING_NUMBER.match(version.strip())
    if not match:
        return None
    return int(match.group(1))


def install_dependencies(ctx: ProvisioningContext) -> str:
    packages = list(ctx.dependency_packages)
    if not packages:
        return "no packages requested"
    log.info(f"Installing {' '.join(packages)}")
    ctx.run(["apt-get", "install", "-y", "-qq", *packages], env=APT_ENV)
    return f"installed {len(packages)} package(s)"


def installed_runtime_major(ctx: ProvisioningContext) -> Optional[int]:
    if not ctx.which("node"):
        return None
    result = ctx.run(["node", "--version"], check=False, log_output=False)
    if result.returncode != 0:
        return None
    version = (result.stdout or "").strip()
    log.info(f"Node.js already installed: {version}")
    return parse_major(version)


def ensure_runtime(ctx: ProvisioningContext) -> str:
    """Install Node.js unless a new enough major version is present."""
    major = installed_runtime_major(ctx)
    if major is not None and major >= ctx.runtime_min_major:
        log.info("Version is compatible")
        return f"node {major} present"
    if major is not None:
        log.warning(f"Node.js {major} is older than {ctx.runtime_min_major}, upgrading...")

    url = RUNTIME_SETUP_URL.format(major=ctx.runtime_install_major)
    log.info(f"Installing Node.js {ctx.runtime_install_major}.x LTS...")
    ctx.run(["bash", "-c", f"curl -fsSL {url} | bash -"], env=APT_ENV)
    ctx.run(["apt-get", "install", "-y", "-qq", "nodejs"], env=APT_ENV)
    return f"node {ctx.runtime_install_major} installed"


def ensure_cli(ctx: ProvisioningContext) -> str:
    """Install the management CLI unless its binary is already on PATH.

    Raises:
        subprocess.CalledProcessError: npm failed
        FileNotFoundError: The binary is still missing afterwards
    """
    if ctx.which(ctx.cli_binary):
        log.info(f"{ctx.cli_binary} already installed")
        return "already installed"
    log.info(f"Installing {ctx.cli_package}...")
    ctx.run(["npm", "install", "-g", ctx.cli_package])
    if not ctx.which(ctx.cli_binary):
        raise FileNotFoundError(f"{ctx.cli_binary} not found on PATH after install")
    log.success(f"{ctx.cli_binary} installed")
    return "installed"
