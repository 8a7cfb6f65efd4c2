# coordinator/state.py
from __future__ import annotations

import logging
import math
import threading
from datetime import datetime, timedelta
from typing import Any, Callable, Iterable, Optional

from ..capabilities import has_capabilities, normalize_capabilities
from ..errors import NotAssigned, NotLeased, UnknownHost, UnknownJob, ValidationError
from ..model import (
    HostRecord,
    JobPayload,
    JobRecord,
    JobResult,
    Snapshot,
    make_id,
    now_utc,
)
from .ledger import HostRegistry, JobLedger
from .replication import host_stamp, job_stamp, pick_updates
from .storage import CoordinatorStore

logger = logging.getLogger(__name__)

DEFAULT_LEASE_MS = 60_000


def _reported_leases(value: Any) -> Optional[int]:
    """A host-reported in-flight count, or None when it should be ignored."""
    if value is None or isinstance(value, bool):
        return None
    if not isinstance(value, (int, float)):
        return None
    if isinstance(value, float) and not math.isfinite(value):
        return None
    if value < 0:
        return None
    return int(value)


class CoordinatorState:
    """
    The coordinator's state engine: host registry + job ledger behind one lock.

    Every public operation runs to completion under the lock, so claim/complete/reclaim
    see and update the host and the job as a unit. Callers get copies; the live records
    never leave this object.
    """

    def __init__(
        self,
        lease_ms: int = DEFAULT_LEASE_MS,
        store: Optional[CoordinatorStore] = None,
        node_id: Optional[str] = None,
        clock: Callable[[], datetime] = now_utc,
    ):
        """
        Args:
            lease_ms: lease duration applied to every claim
            store: optional durable store; loaded now, written through after each mutation
            node_id: identifier reported to peers and health checks
            clock: returns the current UTC time (injectable for tests)
        """
        self.lease = timedelta(milliseconds=max(1, lease_ms))
        self.node_id = node_id or make_id("coord")
        self.store = store
        self.clock = clock
        self._lock = threading.RLock()
        self._hosts = HostRegistry()
        self._jobs = JobLedger()

        if store is not None:
            # hosts before jobs; nothing persisted is a first run
            for host in store.load_hosts():
                self._hosts.put(host)
            for job in store.load_jobs():
                self._jobs.put(job)
            logger.info("loaded %d hosts and %d jobs", len(self._hosts), len(self._jobs))

    # -------------------- Persistence --------------------

    def _save_host(self, host: HostRecord) -> None:
        if self.store is not None:
            self.store.save_host(host)

    def _save_job(self, job: JobRecord) -> None:
        if self.store is not None:
            self.store.save_job(job)

    def _require_host(self, host_id: str) -> HostRecord:
        host = self._hosts.get(host_id)
        if host is None:
            raise UnknownHost(f"unknown host: {host_id}", {"host_id": host_id})
        return host

    # -------------------- Hosts --------------------

    def register_host(
        self,
        name: str,
        capabilities: Optional[Iterable[str]] = None,
        max_parallel: Optional[int] = None,
        host_id: Optional[str] = None,
    ) -> HostRecord:
        """
        Register a host, or re-register an existing id.

        Re-registration resets name, capabilities and max_parallel but keeps
        active_leases and registered_at, so a reconnecting host keeps its accounting.
        """
        name = (name or "").strip()
        if not name:
            raise ValidationError("name is required")
        with self._lock:
            host_id = (host_id or "").strip() or make_id("host")
            existing = self._hosts.get(host_id)
            now = self.clock()
            host = HostRecord(
                id=host_id,
                name=name,
                capabilities=normalize_capabilities(capabilities),
                max_parallel=max(1, int(max_parallel or 1)),
                active_leases=existing.active_leases if existing else 0,
                last_seen_at=now,
                registered_at=existing.registered_at if existing else now,
            )
            self._hosts.put(host)
            self._save_host(host)
            logger.debug("registered host %s (%s) caps=%s", host.id, host.name, host.capabilities)
            return host.copy()

    def heartbeat(self, host_id: str, active_leases: Any = None) -> HostRecord:
        """
        Refresh a host's last_seen_at.

        A usable active_leases value overwrites the tracked count: the host is the
        authority on its own in-flight work, which lets a host that crashed mid-job
        correct the count. The value is not clamped to max_parallel.
        """
        with self._lock:
            host = self._require_host(host_id)
            host.last_seen_at = max(self.clock(), host.last_seen_at)
            reported = _reported_leases(active_leases)
            if reported is not None:
                host.active_leases = reported
            self._save_host(host)
            return host.copy()

    # -------------------- Jobs --------------------

    def enqueue_job(self, payload: JobPayload, requirement: Optional[Iterable[str]] = None) -> JobRecord:
        with self._lock:
            now = self.clock()
            job = JobRecord(
                id=make_id("job"),
                created_at=now,
                updated_at=now,
                status="queued",
                attempts=0,
                requirement=normalize_capabilities(requirement),
                payload=payload,
            )
            self._jobs.put(job)
            self._save_job(job)
            logger.debug("enqueued %s (%s) requires=%s", job.id, payload.kind, job.requirement)
            return job.copy()

    def claim_job(self, host_id: str) -> Optional[JobRecord]:
        """
        Lease the oldest queued job the host can run.

        Returns:
            The leased job, or None when the host is saturated or nothing matches

        Raises:
            UnknownHost: if the host was never registered
        """
        with self._lock:
            self._requeue_expired()
            host = self._require_host(host_id)
            if host.active_leases >= host.max_parallel:
                return None

            job = next(
                (j for j in self._jobs.queued() if has_capabilities(host.capabilities, j.requirement)),
                None,
            )
            if job is None:
                return None

            now = self.clock()
            job.status = "leased"
            job.attempts += 1
            job.assigned_host_id = host.id
            job.touch(now)
            job.lease_expires_at = now + self.lease
            host.active_leases += 1
            host.last_seen_at = max(now, host.last_seen_at)
            self._save_host(host)
            self._save_job(job)
            logger.debug("leased %s to %s (attempt %d)", job.id, host.id, job.attempts)
            return job.copy()

    def complete_job(
        self,
        job_id: str,
        host_id: str,
        success: bool,
        duration_ms: int,
        exit_code: int,
        stdout: str,
        stderr: str,
        error: Optional[str] = None,
    ) -> JobRecord:
        """
        Record the outcome of a leased job.

        Raises:
            UnknownHost: host not registered
            UnknownJob: job not found
            NotAssigned: host is not the job's lease holder
            NotLeased: job is not currently leased
        """
        with self._lock:
            host = self._require_host(host_id)
            job = self._jobs.get(job_id)
            if job is None:
                raise UnknownJob(f"unknown job: {job_id}", {"job_id": job_id})
            if job.assigned_host_id != host_id:
                raise NotAssigned(
                    f"job {job_id} is assigned to {job.assigned_host_id or 'nobody'}",
                    {"job_id": job_id, "host_id": host_id},
                )
            if job.status != "leased":
                raise NotLeased(f"job {job_id} is not leased", {"job_id": job_id, "status": job.status})

            now = self.clock()
            job.status = "completed" if success else "failed"
            job.touch(now)
            job.result = JobResult(
                finished_at=job.updated_at,
                duration_ms=int(duration_ms),
                exit_code=int(exit_code),
                stdout=stdout,
                stderr=stderr,
            )
            job.error = error if not success else None
            job.lease_expires_at = None
            host.active_leases = max(0, host.active_leases - 1)
            host.last_seen_at = max(now, host.last_seen_at)
            self._save_host(host)
            self._save_job(job)
            logger.debug("%s %s on %s", job.id, job.status, host.id)
            return job.copy()

    def get_job(self, job_id: str) -> JobRecord:
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None:
                raise UnknownJob(f"unknown job: {job_id}", {"job_id": job_id})
            return job.copy()

    # -------------------- Lease sweep --------------------

    def _requeue_expired(self) -> int:
        now = self.clock()
        requeued = 0
        for job in self._jobs.leased():
            if job.lease_expires_at is None or job.lease_expires_at > now:
                continue
            host = self._hosts.get(job.assigned_host_id) if job.assigned_host_id else None
            if host is not None and host.active_leases > 0:
                host.active_leases -= 1
                host.last_seen_at = max(now, host.last_seen_at)
                self._save_host(host)
            logger.info("lease expired for %s on %s (attempt %d)", job.id, job.assigned_host_id, job.attempts)
            # attempts is kept so repeated expiry stays visible
            job.status = "queued"
            job.assigned_host_id = None
            job.lease_expires_at = None
            job.touch(now)
            self._save_job(job)
            requeued += 1
        return requeued

    def requeue_expired_leases(self) -> int:
        """Return every expired lease to the queue. Returns how many were reclaimed."""
        with self._lock:
            return self._requeue_expired()

    # -------------------- Snapshots --------------------

    def snapshot(self) -> Snapshot:
        with self._lock:
            self._requeue_expired()
            return Snapshot(
                hosts=[h.copy() for h in self._hosts],
                jobs=[j.copy() for j in self._jobs.in_created_order()],
            )

    def merge_snapshot(self, incoming: Any) -> bool:
        """
        Merge a peer's snapshot (wire form or Snapshot) using last-writer-wins per id.

        Returns:
            True if any local record changed. Malformed input changes nothing.
        """
        if isinstance(incoming, Snapshot):
            snap = incoming
        else:
            try:
                snap = Snapshot.from_dict(incoming)
            except ValueError as e:
                logger.warning("ignoring malformed snapshot: %s", e)
                return False

        with self._lock:
            hosts = pick_updates(self._hosts.get, snap.hosts, host_stamp)
            jobs = pick_updates(self._jobs.get, snap.jobs, job_stamp)
            for host in hosts:
                host = host.copy()
                self._hosts.put(host)
                self._save_host(host)
            for job in jobs:
                job = job.copy()
                self._jobs.put(job)
                self._save_job(job)
            if hosts or jobs:
                logger.debug("merged %d hosts and %d jobs from peer", len(hosts), len(jobs))
            return bool(hosts or jobs)
