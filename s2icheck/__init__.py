# s2icheck - verify S2I builder images
"""
s2icheck - Build and verify source-to-image builder images.

Builds a test application with an S2I image, runs it in a container and
checks it over HTTP and from inside the container.
"""

from s2icheck.config import VerifyConfig
from s2icheck.container_tracker import ContainerTracker
from s2icheck.models import (
    CheckResult,
    ContainerHandle,
    ContainerRole,
    ExecResponse,
    FailureKind,
    Phase,
    RunReport,
)
from s2icheck.orchestrator import Orchestrator

__all__ = [
    "Orchestrator",
    "VerifyConfig",
    "ContainerTracker",
    "ContainerHandle",
    "ContainerRole",
    "CheckResult",
    "ExecResponse",
    "FailureKind",
    "Phase",
    "RunReport",
]

__version__ = "0.1.0"
