import pytest

from jobfleet.agent.executor import EXIT_NOT_ALLOWED, EXIT_NOT_FOUND, EXIT_TIMEOUT, execute_payload
from jobfleet.model import AutomatonPayload, ShellPayload
from jobfleet.settings import ExecutionConfig


@pytest.fixture
def config():
    return ExecutionConfig(allowed_commands=["sh", "bash"], default_timeout_ms=10_000, automaton_command="sh")


def test_shell_success(config):
    result = execute_payload(ShellPayload(command="sh", args=["-c", "echo hi; echo err >&2"]), config)
    assert result.success
    assert result.exit_code == 0
    assert result.stdout == "hi\n"
    assert result.stderr == "err\n"
    assert result.error is None
    assert result.duration_ms >= 0


def test_shell_nonzero_exit(config):
    result = execute_payload(ShellPayload(command="sh", args=["-c", "exit 3"]), config)
    assert not result.success
    assert result.exit_code == 3
    assert result.error == "exited with code 3"


def test_allow_list_matches_basename(config):
    assert execute_payload(ShellPayload(command="/bin/sh", args=["-c", "true"]), config).success

    result = execute_payload(ShellPayload(command="rm", args=["-rf", "/tmp/nothing"]), config)
    assert result.exit_code == EXIT_NOT_ALLOWED
    assert "not allowed" in result.error


def test_timeout(config):
    result = execute_payload(ShellPayload(command="sh", args=["-c", "sleep 5"], timeout_ms=200), config)
    assert not result.success
    assert result.exit_code == EXIT_TIMEOUT
    assert "timed out" in result.error


def test_output_is_truncated():
    config = ExecutionConfig(allowed_commands=["sh"], max_output_bytes=10)
    result = execute_payload(ShellPayload(command="sh", args=["-c", "printf 'x%.0s' $(seq 1 50)"]), config)
    assert result.stdout.startswith("x" * 10)
    assert result.stdout.endswith("[truncated 40 bytes]")


def test_missing_working_directory(config, tmp_path):
    payload = ShellPayload(command="sh", args=["-c", "true"], cwd=str(tmp_path / "gone"))
    result = execute_payload(payload, config)
    assert result.exit_code == EXIT_NOT_FOUND
    assert "working directory" in result.error


def test_automaton_runs_configured_command(config, tmp_path):
    payload = AutomatonPayload(args=["-c", "pwd; echo $FLAVOR"], working_dir=str(tmp_path), env={"FLAVOR": "mint"})
    result = execute_payload(payload, config)
    assert result.success
    lines = result.stdout.splitlines()
    assert lines[0].endswith(tmp_path.name)
    assert lines[1] == "mint"


def test_automaton_binary_missing(tmp_path):
    config = ExecutionConfig(automaton_command=str(tmp_path / "no-such-automaton"))
    result = execute_payload(AutomatonPayload(args=["--run"]), config)
    assert result.exit_code == EXIT_NOT_FOUND
    assert not result.success
