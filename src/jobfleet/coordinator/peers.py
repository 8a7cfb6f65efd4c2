# coordinator/peers.py
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional
from urllib.parse import urlsplit

import httpx

from ..errors import ReplicationQuorumNotMet
from ..settings import TOKEN_HEADER
from .state import CoordinatorState

logger = logging.getLogger(__name__)

LOOPBACK_HOSTS = {"127.0.0.1", "localhost", "0.0.0.0"}


def normalize_peer_urls(urls: Optional[Iterable[str]], own_port: int) -> List[str]:
    """
    Clean the configured peer list: strip, drop blanks and duplicates, and drop
    loopback URLs on this node's own port so a node never replicates to itself.
    """
    out: List[str] = []
    for url in urls or []:
        url = url.strip().rstrip("/")
        if not url or url in out:
            continue
        parts = urlsplit(url)
        if parts.hostname in LOOPBACK_HOSTS and parts.port == own_port:
            continue
        out.append(url)
    return out


@dataclass(frozen=True)
class ReplicationOutcome:
    acked: int
    attempted: int


def require_quorum(outcome: ReplicationOutcome, required: int) -> None:
    """
    Raises:
        ReplicationQuorumNotMet: if fewer than `required` peers acknowledged
    """
    if outcome.acked < required:
        raise ReplicationQuorumNotMet(
            f"replication target not met: required {required} peer acks, got {outcome.acked}",
            {"required": required, "acked": outcome.acked, "attempted": outcome.attempted},
        )


class PeerSynchronizer:
    """
    Pushes full snapshots to peers after mutations and pulls theirs for anti-entropy.

    Each peer call is independent: a failure or timeout on one peer counts as a missing
    ack (push) or a skipped merge (pull) and never affects the others.
    """

    def __init__(
        self,
        state: CoordinatorState,
        peer_urls: List[str],
        token: Optional[str] = None,
        timeout_s: float = 5.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.state = state
        self.peer_urls = list(peer_urls)
        self.token = token
        self.timeout_s = timeout_s
        self.transport = transport

    def _headers(self) -> Dict[str, str]:
        return {TOKEN_HEADER: self.token} if self.token else {}

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            headers=self._headers(),
            timeout=self.timeout_s,
            transport=self.transport,
        )

    async def _push_one(self, client: httpx.AsyncClient, peer_url: str, body: dict) -> bool:
        try:
            resp = await client.post(f"{peer_url}/v1/replicate/snapshot", json=body)
        except httpx.HTTPError as e:
            logger.warning("replication to %s failed: %s", peer_url, e)
            return False
        if resp.is_success:
            return True
        logger.warning("replication to %s rejected: HTTP %d", peer_url, resp.status_code)
        return False

    async def replicate(self) -> ReplicationOutcome:
        """Push the current snapshot to every peer concurrently and count acks."""
        if not self.peer_urls:
            return ReplicationOutcome(acked=0, attempted=0)
        snapshot = await asyncio.to_thread(self.state.snapshot)
        body = snapshot.to_dict()
        async with self._client() as client:
            results = await asyncio.gather(
                *(self._push_one(client, url, body) for url in self.peer_urls),
                return_exceptions=True,
            )
        acked = sum(1 for r in results if r is True)
        return ReplicationOutcome(acked=acked, attempted=len(self.peer_urls))

    async def _pull_one(self, client: httpx.AsyncClient, peer_url: str) -> bool:
        try:
            resp = await client.get(f"{peer_url}/v1/state")
            if not resp.is_success:
                logger.info("sync from %s skipped: HTTP %d", peer_url, resp.status_code)
                return False
            data = resp.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.info("sync from %s skipped: %s", peer_url, e)
            return False
        return await asyncio.to_thread(self.state.merge_snapshot, data)

    async def sync_from_peers(self) -> int:
        """Pull and merge every peer's snapshot. Returns how many merges changed local state."""
        if not self.peer_urls:
            return 0
        async with self._client() as client:
            results = await asyncio.gather(
                *(self._pull_one(client, url) for url in self.peer_urls),
                return_exceptions=True,
            )
        for url, r in zip(self.peer_urls, results):
            if isinstance(r, BaseException):
                logger.warning("sync from %s failed: %r", url, r)
        return sum(1 for r in results if r is True)
