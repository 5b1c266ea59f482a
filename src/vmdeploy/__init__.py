"""vmdeploy - Provision a cloud VM and keep a compose service group on it current.

vmdeploy turns a push to a tracked branch into a running deployment:

- Provision (or reuse) one tagged instance with a firewall
- Wait for the instance to accept SSH connections
- Bootstrap it once with a container runtime and the application checkout
- Converge the running containers to the latest revision on every run
"""

from vmdeploy.lib.errors import ConfigError, DeploymentError, VmDeployError

__version__ = "0.1.0"

__all__ = [
    "__version__",
    "ConfigError",
    "DeploymentError",
    "VmDeployError",
]
