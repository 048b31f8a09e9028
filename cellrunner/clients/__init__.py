from cellrunner.clients.channels import KernelChannel
from cellrunner.clients.gateway import GatewayClient

__all__ = ["GatewayClient", "KernelChannel"]
