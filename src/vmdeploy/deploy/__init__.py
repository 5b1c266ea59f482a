"""vmdeploy deployment engine.

This package provides the pipeline stages: provisioning through a cloud
provider, the readiness gate, one-time bootstrap, and convergence of the
running service group, plus the pipeline that runs them in order.
"""

from vmdeploy.deploy.bootstrap import Bootstrapper
from vmdeploy.deploy.converge import ConvergenceDriver
from vmdeploy.deploy.lock import InstanceLock
from vmdeploy.deploy.pipeline import DeploymentPipeline
from vmdeploy.deploy.provisioner import Provisioner
from vmdeploy.deploy.readiness import await_ready

__all__ = [
    "Bootstrapper",
    "ConvergenceDriver",
    "DeploymentPipeline",
    "InstanceLock",
    "Provisioner",
    "await_ready",
]
