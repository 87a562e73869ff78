"""Network discovery, readiness wait and connectivity checks."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Optional

import aiohttp

from pve_autoinstall.logging import LoggerFactory

from .context import PUBLIC_HOSTNAME, PUBLIC_IP, VENDOR_URL, ProvisioningContext

log = LoggerFactory.for_setup()

HTTPS_TIMEOUT = 3


@dataclass(frozen=True)
class CheckResult:
    name: str
    passed: bool


def _route_field(ctx: ProvisioningContext, keyword: str) -> Optional[str]:
    result = ctx.run(["ip", "route", "get", "1"], check=False, log_output=False)
    tokens = (result.stdout or "").split()
    for index, token in enumerate(tokens[:-1]):
        if token == keyword:
            return tokens[index + 1]
    return None


def get_primary_ip(ctx: ProvisioningContext) -> Optional[str]:
    return _route_field(ctx, "src")


def get_primary_interface(ctx: ProvisioningContext) -> Optional[str]:
    return _route_field(ctx, "dev")


def get_gateway(ctx: ProvisioningContext) -> Optional[str]:
    result = ctx.run(["ip", "route", "show", "default"], check=False, log_output=False)
    tokens = (result.stdout or "").split()
    if "via" in tokens:
        index = tokens.index("via")
        if index + 1 < len(tokens):
            return tokens[index + 1]
    return None


def ping(ctx: ProvisioningContext, host: Optional[str]) -> bool:
    if not host:
        return False
    result = ctx.run(["ping", "-c", "1", "-W", "2", host], check=False, log_output=False)
    return result.returncode == 0


async def _https_reachable(url: str, timeout_seconds: int) -> bool:
    timeout = aiohttp.ClientTimeout(total=timeout_seconds)
    try:
        async with aiohttp.ClientSession(timeout=timeout) as session:
            async with session.head(url, allow_redirects=True) as resp:
                return resp.status < 500
    except (aiohttp.ClientError, asyncio.TimeoutError):
        return False


def https_reachable(url: str = VENDOR_URL, timeout_seconds: int = HTTPS_TIMEOUT) -> bool:
    return asyncio.run(_https_reachable(url, timeout_seconds))


def wait_for_network(ctx: ProvisioningContext) -> bool:
    """Poll until the public address answers or the wait budget runs out."""
    interval = max(1, ctx.network_poll_interval)
    waited = 0
    while True:
        if ping(ctx, PUBLIC_IP):
            log.info(f"Network is up after {waited}s")
            return True
        if waited >= ctx.network_wait_seconds:
            return False
        log.debug(f"Network not ready, retrying in {interval}s")
        ctx.sleep(interval)
        waited += interval


def run_connectivity_checks(ctx: ProvisioningContext) -> list[CheckResult]:
    gateway = get_gateway(ctx)
    log.info(f"Interface: {get_primary_interface(ctx)}")
    log.info(f"IP Address: {get_primary_ip(ctx)}")
    log.info(f"Gateway: {gateway}")

    checks = [
        CheckResult("Gateway ping", ping(ctx, gateway)),
        CheckResult(f"Internet ({PUBLIC_IP})", ping(ctx, PUBLIC_IP)),
        CheckResult("DNS resolution", ping(ctx, PUBLIC_HOSTNAME)),
        CheckResult("HTTPS access", https_reachable()),
    ]
    for check in checks:
        if check.passed:
            log.info(f"{check.name}: ok")
        else:
            log.warning(f"{check.name}: failed")
    return checks
