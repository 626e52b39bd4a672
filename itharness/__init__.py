"""itharness - process orchestration harness for integration tests."""

__all__ = [
    "__version__",
    "config",
    "ports",
    "health",
    "logs",
    "timeline",
    "process",
    "services",
    "clients",
    "auth",
    "scope",
    "exec",
]

__version__ = "0.1.0"

from itharness import config
from itharness import ports
from itharness import health
from itharness import logs
from itharness import timeline
from itharness import process
from itharness import services
from itharness import clients
from itharness import auth
from itharness import scope
from itharness import exec
