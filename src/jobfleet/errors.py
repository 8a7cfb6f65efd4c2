# errors.py
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, ClassVar, Dict


@dataclass(eq=False)
class CoordinatorError(Exception):
    """
    Structured coordinator error with enough context for:
      - an HTTP status at the transport boundary
      - clean CLI output
      - debugging without full tracebacks

    Every error except ReplicationQuorumNotMet leaves coordinator state as it was.
    """
    kind: ClassVar[str] = "coordinator_error"
    status_code: ClassVar[int] = 500
    retriable: ClassVar[bool] = False

    message: str
    details: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        super().__init__(self.message)

    def __str__(self) -> str:
        lines = [f"{self.kind}: {self.message}"]
        for k, v in self.details.items():
            lines.append(f"{k}={v}")
        return "\n".join(lines)


class ValidationError(CoordinatorError):
    """A required field is missing or malformed."""
    kind = "validation_error"
    status_code = 400


class UnknownHost(CoordinatorError):
    kind = "unknown_host"
    status_code = 404


class UnknownJob(CoordinatorError):
    kind = "unknown_job"
    status_code = 404


class NotAssigned(CoordinatorError):
    """The completing host is not the job's lease holder."""
    kind = "not_assigned"
    status_code = 409


class NotLeased(CoordinatorError):
    """The job is not currently leased (already completed or reclaimed)."""
    kind = "not_leased"
    status_code = 409


class ReplicationQuorumNotMet(CoordinatorError):
    """
    The mutation was applied locally but too few peers acknowledged it.
    The local change is kept; the caller may retry.
    """
    kind = "replication_quorum_not_met"
    status_code = 503
    retriable = True


class PeerCapacityError(CoordinatorError):
    """Configured peers can never satisfy the configured minimum replicas."""
    kind = "peer_capacity"
