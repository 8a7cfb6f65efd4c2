# settings.py
from __future__ import annotations

import os
import socket
from dataclasses import dataclass, field
from typing import List, Optional

DEFAULT_PORT = 8787
DEFAULT_COORDINATOR_URL = f"http://127.0.0.1:{DEFAULT_PORT}"
TOKEN_HEADER = "x-jobfleet-token"


def env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def env_opt_int(name: str) -> Optional[int]:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return None
    try:
        return int(raw)
    except ValueError:
        return None


def env_list(name: str, default: str = "") -> List[str]:
    raw = os.environ.get(name, default)
    return [v.strip() for v in raw.split(",") if v.strip()]


@dataclass(frozen=True)
class CoordinatorSettings:
    host: str = "0.0.0.0"
    port: int = DEFAULT_PORT
    token: Optional[str] = None
    lease_ms: int = 60_000
    store_url: str = ""
    node_id: Optional[str] = None
    peer_urls: List[str] = field(default_factory=list)
    peer_sync_ms: int = 3_000
    peer_timeout_s: float = 5.0
    min_replicas: Optional[int] = None  # unset -> replication.DEFAULT_MIN_REPLICAS
    sweep_ms: int = 1_000

    @classmethod
    def from_env(cls) -> CoordinatorSettings:
        return cls(
            host=os.environ.get("JOBFLEET_COORDINATOR_HOST", "0.0.0.0"),
            port=env_int("JOBFLEET_COORDINATOR_PORT", DEFAULT_PORT),
            token=os.environ.get("JOBFLEET_TOKEN") or None,
            lease_ms=env_int("JOBFLEET_LEASE_MS", 60_000),
            store_url=os.environ.get("JOBFLEET_STORE_URL", ""),
            node_id=os.environ.get("JOBFLEET_NODE_ID") or None,
            peer_urls=env_list("JOBFLEET_PEERS"),
            peer_sync_ms=env_int("JOBFLEET_PEER_SYNC_MS", 3_000),
            peer_timeout_s=float(env_int("JOBFLEET_PEER_TIMEOUT_S", 5)),
            min_replicas=env_opt_int("JOBFLEET_MIN_REPLICAS"),
            sweep_ms=env_int("JOBFLEET_SWEEP_MS", 1_000),
        )


@dataclass(frozen=True)
class ExecutionConfig:
    """Host-side limits applied to every job payload."""
    allowed_commands: List[str] = field(default_factory=lambda: ["automaton", "node", "bash", "sh"])
    default_timeout_ms: int = 300_000
    max_output_bytes: int = 128_000
    automaton_command: str = "automaton"


@dataclass(frozen=True)
class HostSettings:
    coordinator_url: str = DEFAULT_COORDINATOR_URL
    token: Optional[str] = None
    host_name: str = ""
    host_id: Optional[str] = None
    capabilities: List[str] = field(default_factory=lambda: ["shell", "automaton"])
    max_parallel: int = 1
    poll_interval_ms: int = 2_000
    heartbeat_interval_ms: int = 5_000
    execution: ExecutionConfig = field(default_factory=ExecutionConfig)

    @classmethod
    def from_env(cls) -> HostSettings:
        return cls(
            coordinator_url=os.environ.get("JOBFLEET_COORDINATOR_URL", DEFAULT_COORDINATOR_URL),
            token=os.environ.get("JOBFLEET_TOKEN") or None,
            host_name=os.environ.get("JOBFLEET_HOST_NAME") or socket.gethostname(),
            host_id=os.environ.get("JOBFLEET_HOST_ID") or None,
            capabilities=env_list("JOBFLEET_CAPABILITIES", "shell,automaton"),
            max_parallel=env_int("JOBFLEET_MAX_PARALLEL", 1),
            poll_interval_ms=env_int("JOBFLEET_POLL_MS", 2_000),
            heartbeat_interval_ms=env_int("JOBFLEET_HEARTBEAT_MS", 5_000),
            execution=ExecutionConfig(
                allowed_commands=env_list("JOBFLEET_ALLOWED_COMMANDS", "automaton,node,bash,sh"),
                default_timeout_ms=env_int("JOBFLEET_TIMEOUT_MS", 300_000),
                max_output_bytes=env_int("JOBFLEET_MAX_OUTPUT_BYTES", 128_000),
                automaton_command=os.environ.get("JOBFLEET_AUTOMATON_COMMAND", "automaton"),
            ),
        )
