# agent/agent.py
from __future__ import annotations

import logging
import signal
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from typing import Optional

from jobfleet.model import HostRecord, JobRecord
from jobfleet.settings import HostSettings
from jobfleet.ui.console import get_console

from .api_client import APIError, CoordinatorClient
from .executor import execute_payload

logger = logging.getLogger(__name__)


class HostAgent:
    """Registers with the coordinator, heartbeats, and runs claimed jobs."""

    def __init__(self, settings: HostSettings, client: Optional[CoordinatorClient] = None):
        self.settings = settings
        self.client = client or CoordinatorClient(settings.coordinator_url, settings.token)
        self.poll_interval = settings.poll_interval_ms / 1000
        self.heartbeat_interval = settings.heartbeat_interval_ms / 1000
        self.host: Optional[HostRecord] = None
        self.running = True
        self._stop = threading.Event()
        self._in_flight = 0
        self._in_flight_lock = threading.Lock()

    def install_signal_handlers(self) -> None:
        signal.signal(signal.SIGINT, self._signal_handler)
        signal.signal(signal.SIGTERM, self._signal_handler)

    def _signal_handler(self, signum, frame):
        """Handle shutdown signals."""
        get_console().print_info(f"\nReceived signal {signum}, shutting down gracefully...")
        self.stop()

    def stop(self) -> None:
        self.running = False
        self._stop.set()

    @property
    def in_flight(self) -> int:
        with self._in_flight_lock:
            return self._in_flight

    def register(self) -> HostRecord:
        self.host = self.client.register(
            name=self.settings.host_name,
            capabilities=self.settings.capabilities,
            max_parallel=self.settings.max_parallel,
            host_id=self.settings.host_id,
        )
        return self.host

    # -------------------- Heartbeat --------------------

    def heartbeat_once(self) -> None:
        # report our own count so the coordinator can correct drift
        self.host = self.client.heartbeat(self.host.id, self.in_flight)

    def _heartbeat_loop(self) -> None:
        while not self._stop.wait(self.heartbeat_interval):
            try:
                self.heartbeat_once()
            except APIError as e:
                logger.warning("heartbeat failed: %s", e)

    # -------------------- Jobs --------------------

    def run_job(self, job: JobRecord) -> None:
        """Execute one leased job and report the outcome."""
        console = get_console()
        try:
            result = execute_payload(job.payload, self.settings.execution)
            self.client.complete(job.id, self.host.id, result)
            console.print_execution_complete(
                job_id=job.id,
                status="ok" if result.success else "failed",
                duration=result.duration_ms / 1000,
            )
        except APIError as e:
            # the lease will expire and the job will be retried elsewhere
            console.print_error(
                "Failed to send completion",
                f"Could not report {job.id} to the coordinator: {e}",
            )
        finally:
            with self._in_flight_lock:
                self._in_flight = max(0, self._in_flight - 1)

    def poll_once(self, pool: ThreadPoolExecutor) -> bool:
        """
        Claim one job if there is capacity and hand it to the pool.

        Returns:
            True if a job was claimed
        """
        if self.in_flight >= self.settings.max_parallel:
            return False
        job = self.client.claim(self.host.id)
        if job is None:
            return False
        with self._in_flight_lock:
            self._in_flight += 1
        get_console().print_lease_acquired(job_id=job.id, kind=job.payload.kind, attempt=job.attempts)
        pool.submit(self.run_job, job)
        return True

    def run(self) -> None:
        """Run the agent loop until stopped."""
        console = get_console()
        self.register()
        console.print_agent_started(
            host_id=self.host.id,
            name=self.host.name,
            coordinator=self.client.base_url,
            capabilities=self.host.capabilities,
            poll_interval=self.poll_interval,
        )

        heartbeat = threading.Thread(target=self._heartbeat_loop, name="jobfleet-heartbeat", daemon=True)
        heartbeat.start()

        with ThreadPoolExecutor(max_workers=self.settings.max_parallel) as pool:
            while self.running:
                try:
                    if not self.poll_once(pool):
                        self._stop.wait(self.poll_interval)
                except APIError as e:
                    console.print_error(
                        "API error",
                        str(e),
                        suggestion="Check coordinator connectivity and retry.",
                    )
                    self._stop.wait(self.poll_interval)

        self._stop.set()
        console.print_info("Agent stopped.")


def run_agent(settings: HostSettings) -> None:
    """
    Run the host agent loop.

    Args:
        settings: Host configuration (coordinator URL, capabilities, limits)
    """
    agent = HostAgent(settings)
    agent.install_signal_handlers()
    agent.run()
