# coordinator/ledger.py
from __future__ import annotations

from typing import Dict, Iterator, List, Optional

from ..model import HostRecord, JobRecord


class HostRegistry:
    """host id -> HostRecord. Hosts are never removed."""

    def __init__(self) -> None:
        self._hosts: Dict[str, HostRecord] = {}

    def get(self, host_id: str) -> Optional[HostRecord]:
        return self._hosts.get(host_id)

    def put(self, host: HostRecord) -> None:
        self._hosts[host.id] = host

    def __iter__(self) -> Iterator[HostRecord]:
        return iter(self._hosts.values())

    def __len__(self) -> int:
        return len(self._hosts)


class JobLedger:
    """job id -> JobRecord. Jobs are never removed; they are the attempt trail."""

    def __init__(self) -> None:
        self._jobs: Dict[str, JobRecord] = {}

    def get(self, job_id: str) -> Optional[JobRecord]:
        return self._jobs.get(job_id)

    def put(self, job: JobRecord) -> None:
        self._jobs[job.id] = job

    def __iter__(self) -> Iterator[JobRecord]:
        return iter(self._jobs.values())

    def __len__(self) -> int:
        return len(self._jobs)

    def in_created_order(self) -> List[JobRecord]:
        # sorted() is stable: equal created_at keeps insertion order
        return sorted(self._jobs.values(), key=lambda j: j.created_at)

    def queued(self) -> List[JobRecord]:
        """Queued jobs, oldest first."""
        return [j for j in self.in_created_order() if j.status == "queued"]

    def leased(self) -> List[JobRecord]:
        return [j for j in self._jobs.values() if j.status == "leased"]
