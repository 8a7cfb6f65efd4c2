from .model import AutomatonPayload, HostRecord, JobRecord, JobResult, ShellPayload, Snapshot
from .errors import (
    CoordinatorError,
    NotAssigned,
    NotLeased,
    ReplicationQuorumNotMet,
    UnknownHost,
    UnknownJob,
    ValidationError,
)

__version__ = "0.1.0"

__all__ = [
    "HostRecord",
    "JobRecord",
    "JobResult",
    "ShellPayload",
    "AutomatonPayload",
    "Snapshot",
    "CoordinatorError",
    "ValidationError",
    "UnknownHost",
    "UnknownJob",
    "NotAssigned",
    "NotLeased",
    "ReplicationQuorumNotMet",
]
