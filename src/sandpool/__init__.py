"""sandpool — pooled, single-use containers for running untrusted submissions."""

from sandpool.containers import ContainerManager
from sandpool.errors import (
    ConfigurationError,
    ContainerNotFoundError,
    ExhaustedError,
    RuntimeCommandError,
    RuntimeConnectionError,
    SandpoolError,
    StagingError,
)
from sandpool.pool import ContainerPool
from sandpool.ports import PortAllocator
from sandpool.service import Service
from sandpool.types import (
    Cause,
    Container,
    ExecutionEnvironment,
    ExecutionResult,
    Status,
    Submission,
    SubmissionFile,
)

__all__ = [
    "Cause",
    "ConfigurationError",
    "Container",
    "ContainerManager",
    "ContainerNotFoundError",
    "ContainerPool",
    "ExecutionEnvironment",
    "ExecutionResult",
    "ExhaustedError",
    "PortAllocator",
    "RuntimeCommandError",
    "RuntimeConnectionError",
    "SandpoolError",
    "Service",
    "StagingError",
    "Status",
    "Submission",
    "SubmissionFile",
]
