"""APT repository toggling for hosts without a subscription.

Enterprise entries are commented out, never deleted, and the community
entry is only added when no list file mentions it yet. Both operations are
safe to repeat.
"""

from __future__ import annotations

from pathlib import Path

from pve_autoinstall.logging import LoggerFactory

from .context import NO_SUBSCRIPTION_ENTRY, ProvisioningContext

log = LoggerFactory.for_setup()


def disable_enterprise_repo(list_file: Path) -> bool:
    """Comment out every active ``deb`` line. Returns True if the file changed."""
    if not list_file.exists():
        return False
    lines = list_file.read_text(encoding="utf-8").splitlines(keepends=True)
    changed = False
    for index, line in enumerate(lines):
        if line.startswith("deb"):
            lines[index] = f"#{line}"
            changed = True
    if changed:
        list_file.write_text("".join(lines), encoding="utf-8")
        log.info(f"Disabled enterprise repository in {list_file.name}")
    return changed


def has_no_subscription_entry(sources_dir: Path) -> bool:
    for list_file in sorted(sources_dir.glob("*.list")):
        try:
            if "pve-no-subscription" in list_file.read_text(encoding="utf-8"):
                return True
        except OSError:
            continue
    return False


def ensure_no_subscription_repo(sources_dir: Path, target: Path) -> bool:
    """Add the community entry unless one exists. Returns True if added."""
    if has_no_subscription_entry(sources_dir):
        return False
    target.parent.mkdir(parents=True, exist_ok=True)
    target.write_text(f"{NO_SUBSCRIPTION_ENTRY}\n", encoding="utf-8")
    log.info("Added no-subscription repository")
    return True


def configure_repositories(ctx: ProvisioningContext) -> str:
    disable_enterprise_repo(ctx.enterprise_list)
    ensure_no_subscription_repo(ctx.sources_dir, ctx.no_subscription_list)
    log.info("Updating package lists...")
    ctx.run(["apt-get", "update", "-qq"])
    return "repositories configured"
