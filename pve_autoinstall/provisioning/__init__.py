"""First-boot provisioning of a freshly installed host."""

from .context import ProvisioningContext
from .steps import STEPS, run_first_boot

__all__ = ["ProvisioningContext", "STEPS", "run_first_boot"]
