# agent/executor.py
from __future__ import annotations

import os
import subprocess
import time
from pathlib import Path
from typing import Dict, List, Optional

from jobfleet.model import AutomatonPayload, JobPayload, ShellPayload
from jobfleet.settings import ExecutionConfig

from .models import ExecutionResult

# conventional shell exit codes for the failures we synthesize
EXIT_TIMEOUT = 124
EXIT_NOT_ALLOWED = 126
EXIT_NOT_FOUND = 127


def _truncate(text: str, max_bytes: int) -> str:
    data = text.encode("utf-8", errors="replace")
    if len(data) <= max_bytes:
        return text
    marker = f"\n...[truncated {len(data) - max_bytes} bytes]"
    return data[:max_bytes].decode("utf-8", errors="ignore") + marker


def _as_text(value) -> str:
    if value is None:
        return ""
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    return value


def _failed(exit_code: int, error: str, started: float, stderr: str = "") -> ExecutionResult:
    return ExecutionResult(
        success=False,
        exit_code=exit_code,
        stdout="",
        stderr=stderr or error,
        duration_ms=int((time.monotonic() - started) * 1000),
        error=error,
    )


def _run(
    argv: List[str],
    cwd: Optional[str],
    env: Dict[str, str],
    timeout_ms: int,
    config: ExecutionConfig,
) -> ExecutionResult:
    started = time.monotonic()
    if cwd and not Path(cwd).is_dir():
        return _failed(EXIT_NOT_FOUND, f"working directory not found: {cwd}", started)
    try:
        proc = subprocess.run(
            argv,
            cwd=cwd,
            env={**os.environ, **env},
            capture_output=True,
            text=True,
            timeout=timeout_ms / 1000,
            check=False,
        )
    except subprocess.TimeoutExpired as e:
        result = _failed(EXIT_TIMEOUT, f"timed out after {timeout_ms}ms", started)
        result.stdout = _truncate(_as_text(e.stdout), config.max_output_bytes)
        return result
    except FileNotFoundError:
        return _failed(EXIT_NOT_FOUND, f"command not found: {argv[0]}", started)
    except OSError as e:
        return _failed(EXIT_NOT_ALLOWED, f"could not start {argv[0]}: {e}", started)

    duration_ms = int((time.monotonic() - started) * 1000)
    ok = proc.returncode == 0
    return ExecutionResult(
        success=ok,
        exit_code=proc.returncode,
        stdout=_truncate(proc.stdout, config.max_output_bytes),
        stderr=_truncate(proc.stderr, config.max_output_bytes),
        duration_ms=duration_ms,
        error=None if ok else f"exited with code {proc.returncode}",
    )


def execute_payload(payload: JobPayload, config: ExecutionConfig) -> ExecutionResult:
    """
    Run a job payload on this host.

    Shell commands must be on the allow-list (matched by basename). Failures to start,
    disallowed commands and timeouts come back as failed results, never as exceptions,
    so the agent can always report completion.
    """
    if isinstance(payload, ShellPayload):
        if Path(payload.command).name not in config.allowed_commands:
            return _failed(EXIT_NOT_ALLOWED, f"command not allowed: {payload.command}", time.monotonic())
        argv = [payload.command, *payload.args]
        cwd = payload.cwd
    elif isinstance(payload, AutomatonPayload):
        argv = [config.automaton_command, *payload.args]
        cwd = payload.working_dir
    else:
        raise TypeError(f"unsupported payload: {type(payload).__name__}")

    timeout_ms = payload.timeout_ms or config.default_timeout_ms
    return _run(argv, cwd, payload.env, timeout_ms, config)
