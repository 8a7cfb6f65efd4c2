# coordinator/replication.py
"""
Replication policy and the snapshot merge rule.

Everything here is pure.

Quorum is counted in peer acknowledgements beyond the local node, which is always the
first replica. Merge is last-writer-wins per id using each record's own logical
timestamp (hosts: last_seen_at, jobs: updated_at). Records are never deleted, so
merging is a per-id join and converges regardless of delivery order or repetition.
Clock skew between coordinators can let a stale write win.
"""
from __future__ import annotations

from typing import Callable, Dict, Iterable, List, Optional, TypeVar

from ..errors import PeerCapacityError
from ..model import HostRecord, JobRecord, canonical_json

DEFAULT_MIN_REPLICAS = 100

R = TypeVar("R", HostRecord, JobRecord)


def normalize_min_replicas(value: Optional[int]) -> int:
    """Unset means the conservative default; anything else is floored to 1."""
    if value is None:
        return DEFAULT_MIN_REPLICAS
    return max(1, int(value))


def required_peer_replications(min_replicas: int) -> int:
    return max(0, min_replicas - 1)


def assert_peer_capacity(min_replicas: int, peer_count: int) -> None:
    """
    Fail fast when the configured peers can never reach quorum.

    Raises:
        PeerCapacityError: if peer_count < min_replicas - 1
    """
    required = required_peer_replications(min_replicas)
    if peer_count < required:
        raise PeerCapacityError(
            f"min replicas {min_replicas} requires at least {required} peers, got {peer_count}",
            {"min_replicas": min_replicas, "peer_count": peer_count},
        )


def supersedes(incoming: R, local: R, stamp: Callable[[R], object]) -> bool:
    """True when `incoming` should replace `local`."""
    a, b = stamp(local), stamp(incoming)
    if b != a:
        return b > a
    # equal stamps: deterministic tie-break so merge stays commutative
    return canonical_json(incoming.to_dict()) > canonical_json(local.to_dict())


def pick_updates(
    current: Callable[[str], Optional[R]],
    incoming: Iterable[R],
    stamp: Callable[[R], object],
) -> List[R]:
    """
    Select the incoming records that win against what is held locally.

    Args:
        current: lookup of the locally held record by id
        incoming: records from a peer snapshot (duplicates allowed)
        stamp: logical timestamp of a record

    Returns:
        One winning record per id that differs from the local one
    """
    winners: Dict[str, R] = {}
    for record in incoming:
        best = winners.get(record.id) or current(record.id)
        if best is None or supersedes(record, best, stamp):
            winners[record.id] = record
    return list(winners.values())


def host_stamp(host: HostRecord):
    return host.last_seen_at


def job_stamp(job: JobRecord):
    return job.updated_at
