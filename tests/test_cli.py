from unittest.mock import MagicMock

import pytest
from click.testing import CliRunner

from jobfleet import cli as cli_module
from jobfleet.cli import cli
from jobfleet.model import AutomatonPayload, ShellPayload


@pytest.fixture
def client(monkeypatch):
    client = MagicMock()
    client.base_url = "http://coordinator"
    client.enqueue.return_value = MagicMock(id="job-123")
    monkeypatch.setattr(cli_module, "CoordinatorClient", MagicMock(return_value=client))
    return client


def test_enqueue_shell_passes_args_through(client):
    result = CliRunner().invoke(cli, ["enqueue-shell", "--require", "gpu", "bash", "-lc", "echo hi"])
    assert result.exit_code == 0, result.output
    assert result.output.strip() == "job-123"
    client.enqueue.assert_called_once_with(ShellPayload(command="bash", args=["-lc", "echo hi"]), ["gpu"])


def test_enqueue_automaton(client):
    result = CliRunner().invoke(cli, ["enqueue-automaton", "--dir", "/srv/auto", "--timeout-ms", "500", "--run", "fast"])
    assert result.exit_code == 0, result.output
    payload = AutomatonPayload(args=["--run", "fast"], working_dir="/srv/auto", timeout_ms=500)
    client.enqueue.assert_called_once_with(payload, ["automaton"])


def test_quorum_failure_exits_nonzero(client):
    client.enqueue.side_effect = cli_module.APIError("request failed (503): replication target not met", status=503)
    result = CliRunner().invoke(cli, ["enqueue-shell", "sh", "-c", "true"])
    assert result.exit_code == 1
    assert "Replication quorum not met" in result.output


def test_coordinator_refuses_default_policy_without_peers(monkeypatch):
    monkeypatch.delenv("JOBFLEET_MIN_REPLICAS", raising=False)
    monkeypatch.delenv("JOBFLEET_PEERS", raising=False)
    result = CliRunner().invoke(cli, ["coordinator"])
    assert result.exit_code == 1
    assert "requires at least 99 peers" in result.output
