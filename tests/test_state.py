import time

import pytest

from jobfleet.coordinator.state import CoordinatorState
from jobfleet.errors import NotAssigned, NotLeased, UnknownHost, UnknownJob, ValidationError
from jobfleet.model import ShellPayload


def _complete(state, job_id, host_id, success=True, **kw):
    return state.complete_job(
        job_id,
        host_id,
        success=success,
        duration_ms=kw.get("duration_ms", 42),
        exit_code=kw.get("exit_code", 0 if success else 1),
        stdout=kw.get("stdout", "ok\n"),
        stderr=kw.get("stderr", ""),
        error=kw.get("error"),
    )


# -------------------- Hosts --------------------

def test_register_normalizes_and_floors(state):
    host = state.register_host(name="  host-a ", capabilities=[" Shell", "shell", "", "automaton"], max_parallel=0)
    assert host.name == "host-a"
    assert host.capabilities == ["automaton", "shell"]
    assert host.max_parallel == 1
    assert host.active_leases == 0
    assert host.id.startswith("host-")


def test_register_requires_name(state):
    with pytest.raises(ValidationError):
        state.register_host(name="   ")


def test_reregister_keeps_leases_and_registered_at(state, clock, shell):
    host = state.register_host(name="a", capabilities=["shell"], max_parallel=2, host_id="h1")
    state.enqueue_job(shell)
    assert state.claim_job("h1") is not None
    clock.advance(seconds=5)

    again = state.register_host(name="renamed", capabilities=["gpu"], max_parallel=4, host_id="h1")
    assert again.name == "renamed"
    assert again.capabilities == ["gpu"]
    assert again.max_parallel == 4
    assert again.active_leases == 1
    assert again.registered_at == host.registered_at
    assert again.last_seen_at > host.last_seen_at


def test_heartbeat_unknown_host(state):
    with pytest.raises(UnknownHost):
        state.heartbeat("nope")


def test_heartbeat_overwrites_active_leases(state, clock):
    host = state.register_host(name="a", max_parallel=2)
    clock.advance(seconds=1)
    updated = state.heartbeat(host.id, 5)
    # trusted, not clamped to max_parallel
    assert updated.active_leases == 5
    assert updated.last_seen_at > host.last_seen_at


@pytest.mark.parametrize("bad", [None, -1, float("nan"), float("inf"), True, "3"])
def test_heartbeat_ignores_unusable_counts(state, bad):
    host = state.register_host(name="a")
    state.heartbeat(host.id, 1)
    assert state.heartbeat(host.id, bad).active_leases == 1


def test_heartbeat_lets_crashed_host_recover(state, shell):
    host = state.register_host(name="a", capabilities=["shell"], max_parallel=1)
    state.enqueue_job(shell)
    state.enqueue_job(shell)
    assert state.claim_job(host.id) is not None
    assert state.claim_job(host.id) is None

    state.heartbeat(host.id, 0)
    assert state.claim_job(host.id) is not None


# -------------------- Claim --------------------

def test_enqueue_defaults(state, shell):
    job = state.enqueue_job(shell, [" Shell "])
    assert job.status == "queued"
    assert job.attempts == 0
    assert job.requirement == ["shell"]
    assert job.assigned_host_id is None
    assert job.lease_expires_at is None


def test_claim_unknown_host(state):
    with pytest.raises(UnknownHost):
        state.claim_job("ghost")


def test_scenario_capability_matching(state, shell, automaton):
    a = state.register_host(name="a", capabilities=["shell"], max_parallel=1)
    j1 = state.enqueue_job(shell, ["shell"])
    j2 = state.enqueue_job(automaton, ["automaton"])

    claimed = state.claim_job(a.id)
    assert claimed.id == j1.id
    assert claimed.status == "leased"
    assert claimed.assigned_host_id == a.id
    assert claimed.attempts == 1

    done = _complete(state, j1.id, a.id)
    assert done.status == "completed"
    assert done.result.stdout == "ok\n"
    assert done.lease_expires_at is None
    assert state.snapshot().hosts[0].active_leases == 0

    # only J2 left and host A cannot run it
    assert state.claim_job(a.id) is None
    assert state.get_job(j2.id).status == "queued"


def test_claim_prefers_oldest_eligible(state, clock, shell):
    host = state.register_host(name="a", capabilities=["shell"], max_parallel=3)
    first = state.enqueue_job(shell, ["gpu"])
    clock.advance(seconds=1)
    second = state.enqueue_job(shell, ["shell"])
    clock.advance(seconds=1)
    third = state.enqueue_job(shell)

    assert state.claim_job(host.id).id == second.id
    assert state.claim_job(host.id).id == third.id
    assert state.claim_job(host.id) is None
    assert state.get_job(first.id).status == "queued"


def test_claim_respects_max_parallel(state, shell):
    host = state.register_host(name="a", capabilities=["shell"], max_parallel=2)
    for _ in range(4):
        state.enqueue_job(shell)

    assert state.claim_job(host.id) is not None
    assert state.claim_job(host.id) is not None
    assert state.claim_job(host.id) is None

    leased = [j for j in state.snapshot().jobs if j.status == "leased"]
    assert len(leased) == 2


def test_claim_returns_copy(state, shell):
    host = state.register_host(name="a")
    state.enqueue_job(shell)
    job = state.claim_job(host.id)
    job.status = "completed"
    assert state.get_job(job.id).status == "leased"


# -------------------- Complete --------------------

def test_complete_failure_records_error(state, shell):
    host = state.register_host(name="a")
    job = state.enqueue_job(shell)
    state.claim_job(host.id)

    failed = _complete(state, job.id, host.id, success=False, exit_code=2, stderr="boom", error="exited with code 2")
    assert failed.status == "failed"
    assert failed.error == "exited with code 2"
    assert failed.result.exit_code == 2
    assert failed.result.stderr == "boom"
    # kept as history
    assert failed.assigned_host_id == host.id


def test_complete_guards(state, shell):
    a = state.register_host(name="a", host_id="a")
    b = state.register_host(name="b", host_id="b")
    job = state.enqueue_job(shell)

    with pytest.raises(UnknownHost):
        _complete(state, job.id, "ghost")
    with pytest.raises(UnknownJob):
        _complete(state, "job-missing", a.id)
    # queued, never assigned
    with pytest.raises(NotAssigned):
        _complete(state, job.id, a.id)

    state.claim_job(a.id)
    with pytest.raises(NotAssigned):
        _complete(state, job.id, b.id)

    _complete(state, job.id, a.id)
    with pytest.raises(NotLeased):
        _complete(state, job.id, a.id)


def test_rejected_completion_changes_nothing(state, shell):
    a = state.register_host(name="a", host_id="a")
    state.register_host(name="b", host_id="b")
    job = state.enqueue_job(shell)
    state.claim_job(a.id)
    before = state.snapshot().to_dict()

    with pytest.raises(NotAssigned):
        _complete(state, job.id, "b")
    assert state.snapshot().to_dict() == before


# -------------------- Lease expiry --------------------

def test_expired_lease_is_requeued(state, clock, shell):
    host = state.register_host(name="a")
    job = state.enqueue_job(shell)
    state.claim_job(host.id)

    clock.advance(seconds=9)
    assert state.requeue_expired_leases() == 0
    clock.advance(seconds=1)
    assert state.requeue_expired_leases() == 1
    # idempotent with no elapsed time
    assert state.requeue_expired_leases() == 0

    requeued = state.get_job(job.id)
    assert requeued.status == "queued"
    assert requeued.assigned_host_id is None
    assert requeued.lease_expires_at is None
    assert requeued.attempts == 1
    assert state.snapshot().hosts[0].active_leases == 0


def test_attempts_increase_on_every_claim(state, clock, shell):
    host = state.register_host(name="a")
    job = state.enqueue_job(shell)
    for attempt in (1, 2, 3):
        claimed = state.claim_job(host.id)
        assert claimed.id == job.id
        assert claimed.attempts == attempt
        clock.advance(seconds=11)


def test_completion_after_reclaim_is_rejected(state, clock, shell):
    host = state.register_host(name="a")
    job = state.enqueue_job(shell)
    state.claim_job(host.id)
    clock.advance(seconds=11)
    state.requeue_expired_leases()

    with pytest.raises(NotAssigned):
        _complete(state, job.id, host.id)


def test_snapshot_runs_sweep(state, clock, shell):
    host = state.register_host(name="a")
    state.enqueue_job(shell)
    state.claim_job(host.id)
    clock.advance(seconds=10)
    assert state.snapshot().jobs[0].status == "queued"


def test_updated_at_never_decreases(state, clock, shell):
    host = state.register_host(name="a")
    job = state.enqueue_job(shell)
    clock.advance(seconds=-30)
    claimed = state.claim_job(host.id)
    assert claimed.updated_at >= job.updated_at


def test_scenario_real_lease_timeout():
    state = CoordinatorState(lease_ms=10)
    host = state.register_host(name="openclaw-b", capabilities=["shell"], max_parallel=1)
    state.enqueue_job(ShellPayload(command="bash", args=["-lc", "echo hi"]))

    first = state.claim_job(host.id)
    assert first is not None
    time.sleep(0.02)

    assert state.requeue_expired_leases() == 1
    job = state.get_job(first.id)
    assert job.status == "queued"
    assert job.assigned_host_id is None

    second = state.claim_job(host.id)
    assert second.id == first.id
    assert second.attempts == 2


def test_lease_changes_count_as_host_contact(state, clock, shell):
    host = state.register_host(name="a", max_parallel=2)
    first = state.enqueue_job(shell)
    state.enqueue_job(shell)

    clock.advance(seconds=1)
    state.claim_job(host.id)
    assert state.snapshot().hosts[0].last_seen_at == clock.now

    clock.advance(seconds=1)
    _complete(state, first.id, host.id)
    assert state.snapshot().hosts[0].last_seen_at == clock.now

    clock.advance(seconds=1)
    state.claim_job(host.id)
    clock.advance(seconds=10)
    assert state.requeue_expired_leases() == 1
    assert state.snapshot().hosts[0].last_seen_at == clock.now
