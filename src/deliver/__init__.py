"""deliver: Deploy an application to many hosts with pluggable strategies."""

__version__ = "0.4.0"

from .config import Configuration, Host, load_config, resolve
from .deploy import Deployment, DeploymentResult
from .executor import Executor, HostStatus
from .modes import Dispatcher, ExecutionMode
from .monitor import Job, JobMonitor, JobOutcome
from .strategies import Strategy, discover, load

__all__ = [
    "Configuration",
    "Host",
    "load_config",
    "resolve",
    "Deployment",
    "DeploymentResult",
    "Executor",
    "HostStatus",
    "Dispatcher",
    "ExecutionMode",
    "Job",
    "JobMonitor",
    "JobOutcome",
    "Strategy",
    "discover",
    "load",
]
