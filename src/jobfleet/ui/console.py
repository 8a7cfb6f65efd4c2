"""Console output formatting utilities for jobfleet."""

from __future__ import annotations

import sys
from typing import List, Optional

from jobfleet.model import JobRecord, Snapshot


class Console:
    """Centralized console output formatting."""

    def __init__(self, debug: bool = False):
        """
        Initialize console formatter.

        Args:
            debug: If True, show detailed output including stack traces
        """
        self.debug = debug

    def print_header(self, title: str) -> None:
        """Print a section header."""
        print(f"\n{title}")
        print("-" * len(title))

    def print_coordinator_started(self, node_id: str, host: str, port: int, peers: List[str]) -> None:
        print("\nCOORDINATOR STARTED")
        print(f"Node ID: {node_id}")
        print(f"Listening: http://{host}:{port}")
        print(f"Peers: {', '.join(peers) if peers else '(none)'}")
        print()

    def print_agent_started(
        self,
        host_id: str,
        name: str,
        coordinator: str,
        capabilities: List[str],
        poll_interval: float,
    ) -> None:
        """Print agent start information."""
        print("\nHOST REGISTERED")
        print(f"Host ID: {host_id} ({name})")
        print(f"Coordinator: {coordinator}")
        print(f"Capabilities: {', '.join(capabilities) or '(none)'}")
        print(f"Polling every: {poll_interval:g}s")
        print()

    def print_lease_acquired(self, job_id: str, kind: str, attempt: int) -> None:
        """Print lease acquisition message."""
        print("\nLEASE ACQUIRED")
        print(f"Job: {job_id} ({kind})")
        print(f"Attempt: {attempt}")

    def print_execution_complete(
        self,
        job_id: str,
        status: str,
        duration: Optional[float] = None,
    ) -> None:
        """Print execution completion message."""
        print("\nEXECUTION COMPLETE")
        print(f"Job: {job_id}")
        print(f"Status: {status}")
        if duration is not None:
            print(f"Duration: {duration:.1f}s")

    def print_job(self, job: JobRecord) -> None:
        host = f" host={job.assigned_host_id}" if job.assigned_host_id else ""
        print(f"  {job.id}  {job.status:<9} attempts={job.attempts} kind={job.payload.kind}{host}")

    def print_snapshot(self, snapshot: Snapshot) -> None:
        self.print_header(f"HOSTS ({len(snapshot.hosts)})")
        for h in snapshot.hosts:
            caps = ",".join(h.capabilities) or "-"
            print(f"  {h.id}  {h.name}  leases={h.active_leases}/{h.max_parallel} caps={caps}")
        self.print_header(f"JOBS ({len(snapshot.jobs)})")
        for j in snapshot.jobs:
            self.print_job(j)

    def print_error(
        self,
        title: str,
        message: str,
        details: Optional[list[str]] = None,
        suggestion: Optional[str] = None,
    ) -> None:
        """
        Print structured error message.

        Args:
            title: Error title
            message: Main error message
            details: Optional list of detail lines
            suggestion: Optional suggestion for user
        """
        print(f"\nERROR: {title}", file=sys.stderr)
        print(f"{message}", file=sys.stderr)
        if details:
            for detail in details:
                print(f"  {detail}", file=sys.stderr)
        if suggestion:
            print(f"\n{suggestion}", file=sys.stderr)

    def print_exception(self, exc: Exception) -> None:
        """Print exception, with full traceback only in debug mode."""
        if self.debug:
            import traceback
            traceback.print_exc()
        else:
            print(f"Error: {exc}", file=sys.stderr)

    def print_info(self, message: str) -> None:
        """Print informational message."""
        print(message)


# Global console instance (will be initialized by CLI)
_console: Optional[Console] = None


def get_console() -> Console:
    """Get the global console instance."""
    global _console
    if _console is None:
        _console = Console()
    return _console


def set_console(console: Console) -> None:
    """Set the global console instance."""
    global _console
    _console = console
