# model.py
from __future__ import annotations

import json
import math
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Union

from .errors import ValidationError

JOB_STATUSES = ("queued", "leased", "completed", "failed")

SHELL_KIND = "shell"
AUTOMATON_KIND = "automaton-run"


def now_utc() -> datetime:
    return datetime.now(timezone.utc)


def make_id(prefix: str) -> str:
    return f"{prefix}-{uuid.uuid4().hex[:12]}"


def to_iso(ts: Optional[datetime]) -> Optional[str]:
    if ts is None:
        return None
    return ts.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def parse_iso(value: Any) -> datetime:
    if isinstance(value, datetime):
        ts = value
    elif isinstance(value, str):
        # fromisoformat() only accepts "Z" from 3.11 on
        ts = datetime.fromisoformat(value.replace("Z", "+00:00"))
    else:
        raise ValueError(f"not a timestamp: {value!r}")
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts


def _str_list(value: Any) -> List[str]:
    if value is None:
        return []
    if not isinstance(value, list):
        raise ValidationError("expected a list of strings", {"value": value})
    return [str(v) for v in value]


def _str_dict(value: Any) -> Dict[str, str]:
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ValidationError("expected a mapping of strings", {"value": value})
    return {str(k): str(v) for k, v in value.items()}


def _int(value: Any, minimum: Optional[int] = None) -> int:
    if isinstance(value, float) and not math.isfinite(value):
        raise ValueError(f"not a finite number: {value!r}")
    n = int(value)
    if minimum is not None and n < minimum:
        raise ValueError(f"expected at least {minimum}, got {n}")
    return n


def _opt_int(value: Any) -> Optional[int]:
    if value is None:
        return None
    return _int(value)


# -------------------- Payloads --------------------

@dataclass(frozen=True)
class ShellPayload:
    """Run `command args...` on the host."""
    command: str
    args: List[str] = field(default_factory=list)
    cwd: Optional[str] = None
    env: Dict[str, str] = field(default_factory=dict)
    timeout_ms: Optional[int] = None

    kind = SHELL_KIND

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"kind": self.kind, "command": self.command, "args": list(self.args)}
        if self.cwd is not None:
            data["cwd"] = self.cwd
        if self.env:
            data["env"] = dict(self.env)
        if self.timeout_ms is not None:
            data["timeoutMs"] = self.timeout_ms
        return data


@dataclass(frozen=True)
class AutomatonPayload:
    """Run the host's configured automaton binary with `args`."""
    args: List[str] = field(default_factory=list)
    working_dir: Optional[str] = None
    env: Dict[str, str] = field(default_factory=dict)
    timeout_ms: Optional[int] = None

    kind = AUTOMATON_KIND

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"kind": self.kind, "args": list(self.args)}
        if self.working_dir is not None:
            data["automatonDir"] = self.working_dir
        if self.env:
            data["env"] = dict(self.env)
        if self.timeout_ms is not None:
            data["timeoutMs"] = self.timeout_ms
        return data


JobPayload = Union[ShellPayload, AutomatonPayload]


def payload_from_dict(data: Any) -> JobPayload:
    """
    Build a payload from its wire form, dispatching on `kind`.

    Raises:
        ValidationError: if the payload is missing, has no kind, or the kind is unknown
    """
    if not isinstance(data, dict) or not data.get("kind"):
        raise ValidationError("payload is required", {"payload": data})

    kind = data["kind"]
    try:
        if kind == SHELL_KIND:
            command = str(data.get("command") or "").strip()
            if not command:
                raise ValidationError("shell payload requires a command")
            return ShellPayload(
                command=command,
                args=_str_list(data.get("args")),
                cwd=data.get("cwd"),
                env=_str_dict(data.get("env")),
                timeout_ms=_opt_int(data.get("timeoutMs")),
            )
        if kind == AUTOMATON_KIND:
            return AutomatonPayload(
                args=_str_list(data.get("args")),
                working_dir=data.get("automatonDir"),
                env=_str_dict(data.get("env")),
                timeout_ms=_opt_int(data.get("timeoutMs")),
            )
    except (TypeError, ValueError, OverflowError) as e:
        raise ValidationError(f"invalid {kind} payload: {e}")
    raise ValidationError(f"unknown payload kind: {kind}", {"kind": kind})


# -------------------- Records --------------------

@dataclass
class HostRecord:
    """A registered host. Never deleted; re-registration is an upsert."""
    id: str
    name: str
    capabilities: List[str]
    max_parallel: int
    active_leases: int
    last_seen_at: datetime
    registered_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "capabilities": list(self.capabilities),
            "maxParallel": self.max_parallel,
            "activeLeases": self.active_leases,
            "lastSeenAt": to_iso(self.last_seen_at),
            "registeredAt": to_iso(self.registered_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> HostRecord:
        return cls(
            id=str(data["id"]),
            name=str(data["name"]),
            capabilities=_str_list(data.get("capabilities")),
            max_parallel=_int(data["maxParallel"], minimum=1),
            active_leases=_int(data["activeLeases"], minimum=0),
            last_seen_at=parse_iso(data["lastSeenAt"]),
            registered_at=parse_iso(data["registeredAt"]),
        )

    def copy(self) -> HostRecord:
        return replace(self, capabilities=list(self.capabilities))


@dataclass(frozen=True)
class JobResult:
    finished_at: datetime
    duration_ms: int
    exit_code: int
    stdout: str
    stderr: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "finishedAt": to_iso(self.finished_at),
            "durationMs": self.duration_ms,
            "exitCode": self.exit_code,
            "stdout": self.stdout,
            "stderr": self.stderr,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> JobResult:
        return cls(
            finished_at=parse_iso(data["finishedAt"]),
            duration_ms=int(data["durationMs"]),
            exit_code=int(data["exitCode"]),
            stdout=str(data.get("stdout", "")),
            stderr=str(data.get("stderr", "")),
        )


@dataclass
class JobRecord:
    """
    A unit of work and its lease/attempt history.

    `lease_expires_at` is set only while leased. `assigned_host_id` is kept after
    completion as history and cleared only by the expiry sweep.
    """
    id: str
    created_at: datetime
    updated_at: datetime
    status: str
    attempts: int
    requirement: List[str]
    payload: JobPayload
    lease_expires_at: Optional[datetime] = None
    assigned_host_id: Optional[str] = None
    result: Optional[JobResult] = None
    error: Optional[str] = None

    def touch(self, now: datetime) -> None:
        self.updated_at = max(now, self.updated_at)

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "id": self.id,
            "createdAt": to_iso(self.created_at),
            "updatedAt": to_iso(self.updated_at),
            "status": self.status,
            "attempts": self.attempts,
            "requirement": {"requiredCapabilities": list(self.requirement)},
            "payload": self.payload.to_dict(),
        }
        if self.lease_expires_at is not None:
            data["leaseExpiresAt"] = to_iso(self.lease_expires_at)
        if self.assigned_host_id is not None:
            data["assignedHostId"] = self.assigned_host_id
        if self.result is not None:
            data["result"] = self.result.to_dict()
        if self.error is not None:
            data["error"] = self.error
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> JobRecord:
        status = data["status"]
        if status not in JOB_STATUSES:
            raise ValueError(f"unknown job status: {status}")
        requirement = data.get("requirement") or {}
        lease = data.get("leaseExpiresAt")
        result = data.get("result")
        if status == "leased" and not (lease and data.get("assignedHostId")):
            raise ValueError("leased job needs leaseExpiresAt and assignedHostId")
        return cls(
            id=str(data["id"]),
            created_at=parse_iso(data["createdAt"]),
            updated_at=parse_iso(data["updatedAt"]),
            status=status,
            attempts=_int(data["attempts"], minimum=0),
            requirement=_str_list(requirement.get("requiredCapabilities")),
            payload=payload_from_dict(data["payload"]),
            lease_expires_at=parse_iso(lease) if lease else None,
            assigned_host_id=data.get("assignedHostId"),
            result=JobResult.from_dict(result) if result else None,
            error=data.get("error"),
        )

    def copy(self) -> JobRecord:
        return replace(self, requirement=list(self.requirement))


def canonical_json(data: Dict[str, Any]) -> str:
    return json.dumps(data, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


@dataclass
class Snapshot:
    """Full exported state: the unit of replication and inspection."""
    hosts: List[HostRecord] = field(default_factory=list)
    jobs: List[JobRecord] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "hosts": [h.to_dict() for h in self.hosts],
            "jobs": [j.to_dict() for j in self.jobs],
        }

    @classmethod
    def from_dict(cls, data: Any) -> Snapshot:
        """
        Parse a snapshot received from a peer.

        Raises:
            ValueError: on any structural problem; callers treat that as a no-op merge
        """
        if not isinstance(data, dict):
            raise ValueError("snapshot must be an object")
        hosts = data.get("hosts", [])
        jobs = data.get("jobs", [])
        if not isinstance(hosts, list) or not isinstance(jobs, list):
            raise ValueError("snapshot hosts/jobs must be lists")
        try:
            return cls(
                hosts=[HostRecord.from_dict(h) for h in hosts],
                jobs=[JobRecord.from_dict(j) for j in jobs],
            )
        except (KeyError, TypeError, AttributeError, OverflowError, ValidationError) as e:
            raise ValueError(f"malformed snapshot record: {e}") from e
