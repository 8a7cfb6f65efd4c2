# agent/api_client.py
from __future__ import annotations

import json
import urllib.error
import urllib.request
from typing import Any, Dict, Iterable, List, Optional
from urllib.parse import quote, urljoin

from jobfleet.model import HostRecord, JobPayload, JobRecord, Snapshot
from jobfleet.settings import TOKEN_HEADER

from .models import ExecutionResult


class APIError(Exception):
    """Raised when coordinator requests fail."""

    def __init__(self, message: str, status: Optional[int] = None, kind: Optional[str] = None):
        super().__init__(message)
        self.status = status
        self.kind = kind


class CoordinatorClient:
    """HTTP client for the coordinator API."""

    def __init__(self, base_url: str, token: Optional[str] = None, timeout_s: float = 30.0):
        """
        Args:
            base_url: Base URL of the coordinator (e.g., "http://127.0.0.1:8787")
            token: Shared token sent on every request, if configured
            timeout_s: Per-request socket timeout
        """
        self.base_url = base_url.rstrip("/")
        self.token = token
        self.timeout_s = timeout_s

    def _request(self, method: str, path: str, data: Optional[dict] = None) -> dict:
        """
        Make an HTTP request to the coordinator.

        Returns:
            Parsed JSON response as dictionary

        Raises:
            APIError: If the request fails
        """
        url = urljoin(self.base_url + "/", path.lstrip("/"))

        req_headers = {"Content-Type": "application/json"}
        if self.token:
            req_headers[TOKEN_HEADER] = self.token

        req_data = json.dumps(data).encode("utf-8") if data is not None else None
        req = urllib.request.Request(url, data=req_data, headers=req_headers, method=method)

        try:
            with urllib.request.urlopen(req, timeout=self.timeout_s) as response:
                response_data = response.read().decode("utf-8")
                return json.loads(response_data) if response_data else {}
        except urllib.error.HTTPError as e:
            error_body = e.read().decode("utf-8") if e.fp else ""
            detail, kind = error_body, None
            try:
                parsed = json.loads(error_body)
                detail, kind = parsed.get("detail", error_body), parsed.get("kind")
            except (json.JSONDecodeError, AttributeError):
                pass
            raise APIError(f"request failed ({e.code}): {detail}", status=e.code, kind=kind)
        except urllib.error.URLError as e:
            raise APIError(f"Network error: {e.reason}")
        except json.JSONDecodeError as e:
            raise APIError(f"Invalid JSON response: {e}")

    def register(
        self,
        name: str,
        capabilities: Iterable[str],
        max_parallel: int,
        host_id: Optional[str] = None,
    ) -> HostRecord:
        body = {
            "hostId": host_id,
            "name": name,
            "capabilities": list(capabilities),
            "maxParallel": max_parallel,
        }
        return HostRecord.from_dict(self._request("POST", "/v1/hosts/register", body)["host"])

    def heartbeat(self, host_id: str, active_leases: Optional[int] = None) -> HostRecord:
        body = {"activeLeases": active_leases}
        resp = self._request("POST", f"/v1/hosts/{quote(host_id, safe='')}/heartbeat", body)
        return HostRecord.from_dict(resp["host"])

    def claim(self, host_id: str) -> Optional[JobRecord]:
        """
        Claim the next job this host can run.

        Returns:
            The leased job, or None when nothing is available
        """
        resp = self._request("POST", f"/v1/hosts/{quote(host_id, safe='')}/claim", {})
        job = resp.get("job")
        return JobRecord.from_dict(job) if job else None

    def complete(self, job_id: str, host_id: str, result: ExecutionResult) -> JobRecord:
        resp = self._request(
            "POST",
            f"/v1/jobs/{quote(job_id, safe='')}/complete",
            result.to_completion(host_id),
        )
        return JobRecord.from_dict(resp["job"])

    def enqueue(self, payload: JobPayload, required_capabilities: Optional[List[str]] = None) -> JobRecord:
        body: Dict[str, Any] = {"payload": payload.to_dict()}
        if required_capabilities:
            body["requirement"] = {"requiredCapabilities": required_capabilities}
        return JobRecord.from_dict(self._request("POST", "/v1/jobs", body)["job"])

    def state(self) -> Snapshot:
        return Snapshot.from_dict(self._request("GET", "/v1/state"))
