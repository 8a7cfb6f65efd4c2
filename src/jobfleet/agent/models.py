# agent/models.py
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Optional


@dataclass
class ExecutionResult:
    """Result of running one job payload on this host."""
    success: bool
    exit_code: int
    stdout: str
    stderr: str
    duration_ms: int
    error: Optional[str] = None

    def to_completion(self, host_id: str) -> Dict[str, Any]:
        """Convert to the coordinator's completion request body."""
        return {
            "hostId": host_id,
            "success": self.success,
            "durationMs": self.duration_ms,
            "exitCode": self.exit_code,
            "stdout": self.stdout,
            "stderr": self.stderr,
            "error": self.error,
        }
