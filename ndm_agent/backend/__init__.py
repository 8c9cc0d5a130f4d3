# Storage backends the agent provisions devices into
from .provisioner import ProvisionerContext, ProvisionerError, make_provisioner

__all__ = ["ProvisionerContext", "ProvisionerError", "make_provisioner"]
