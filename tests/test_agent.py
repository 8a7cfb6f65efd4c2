from datetime import datetime, timezone
from unittest.mock import MagicMock

import pytest

from jobfleet.agent.agent import HostAgent
from jobfleet.agent.api_client import APIError
from jobfleet.model import HostRecord, JobRecord, ShellPayload
from jobfleet.settings import ExecutionConfig, HostSettings

T0 = datetime(2026, 1, 1, tzinfo=timezone.utc)


def _host(**kw):
    data = dict(id="h1", name="h", capabilities=["shell"], max_parallel=1, active_leases=0, last_seen_at=T0, registered_at=T0)
    data.update(kw)
    return HostRecord(**data)


def _job(command="sh", args=("-c", "echo hi")):
    return JobRecord(
        id="job-1",
        created_at=T0,
        updated_at=T0,
        status="leased",
        attempts=1,
        requirement=["shell"],
        payload=ShellPayload(command=command, args=list(args)),
        assigned_host_id="h1",
    )


@pytest.fixture
def client():
    client = MagicMock()
    client.base_url = "http://coordinator"
    client.register.return_value = _host()
    client.heartbeat.return_value = _host()
    return client


@pytest.fixture
def agent(client):
    settings = HostSettings(
        host_name="h",
        host_id="h1",
        capabilities=["shell"],
        max_parallel=1,
        execution=ExecutionConfig(allowed_commands=["sh"]),
    )
    agent = HostAgent(settings, client=client)
    agent.register()
    return agent


def test_register_sends_settings(agent, client):
    client.register.assert_called_once_with(name="h", capabilities=["shell"], max_parallel=1, host_id="h1")
    assert agent.host.id == "h1"


def test_poll_claims_until_saturated(agent, client):
    client.claim.return_value = _job()
    pool = MagicMock()

    assert agent.poll_once(pool) is True
    assert agent.in_flight == 1
    pool.submit.assert_called_once_with(agent.run_job, client.claim.return_value)

    assert agent.poll_once(pool) is False
    assert client.claim.call_count == 1


def test_poll_with_nothing_to_claim(agent, client):
    client.claim.return_value = None
    assert agent.poll_once(MagicMock()) is False
    assert agent.in_flight == 0


def test_run_job_reports_completion(agent, client):
    client.claim.return_value = _job()
    agent.poll_once(MagicMock())

    agent.run_job(client.claim.return_value)
    job_id, host_id, result = client.complete.call_args.args
    assert (job_id, host_id) == ("job-1", "h1")
    assert result.success
    assert result.stdout == "hi\n"
    assert agent.in_flight == 0


def test_run_job_reports_failure_as_completion(agent, client):
    agent.run_job(_job(command="curl", args=["http://example.com"]))
    result = client.complete.call_args.args[2]
    assert not result.success
    assert result.exit_code == 126


def test_completion_error_is_not_raised(agent, client):
    client.complete.side_effect = APIError("request failed (409): job-1 is not leased", status=409, kind="not_leased")
    agent.run_job(_job())
    assert agent.in_flight == 0


def test_heartbeat_reports_in_flight(agent, client):
    client.claim.return_value = _job()
    agent.poll_once(MagicMock())
    agent.heartbeat_once()
    client.heartbeat.assert_called_once_with("h1", 1)

