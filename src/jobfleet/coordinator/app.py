# coordinator/app.py
from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager, suppress
from typing import Any, Optional

import httpx
from fastapi import Depends, FastAPI, Header, HTTPException, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from ..errors import CoordinatorError
from ..model import payload_from_dict
from ..settings import TOKEN_HEADER, CoordinatorSettings
from .peers import PeerSynchronizer, normalize_peer_urls, require_quorum
from .replication import assert_peer_capacity, normalize_min_replicas, required_peer_replications
from .state import CoordinatorState
from .storage import open_store

logger = logging.getLogger(__name__)

# -------------------- Schemas --------------------

class RegisterHostRequest(BaseModel):
    hostId: Optional[str] = None
    name: str = ""
    capabilities: list[str] = Field(default_factory=list)
    maxParallel: Optional[int] = None

class HeartbeatRequest(BaseModel):
    activeLeases: Any = None

class Requirement(BaseModel):
    requiredCapabilities: list[str] = Field(default_factory=list)

class EnqueueJobRequest(BaseModel):
    payload: Optional[dict[str, Any]] = None
    requirement: Optional[Requirement] = None

class CompleteRequest(BaseModel):
    hostId: str
    success: bool
    durationMs: int = 0
    exitCode: int = 0
    stdout: str = ""
    stderr: str = ""
    error: Optional[str] = None

# -------------------- Background loops --------------------

async def _every(interval_s: float, name: str, fn) -> None:
    while True:
        await asyncio.sleep(interval_s)
        try:
            result = fn()
            if asyncio.iscoroutine(result):
                await result
        except Exception:
            logger.exception("%s failed", name)

# -------------------- App --------------------

def create_app(
    settings: Optional[CoordinatorSettings] = None,
    state: Optional[CoordinatorState] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> FastAPI:
    """
    Build the coordinator HTTP service.

    Raises:
        PeerCapacityError: if the configured peers can never satisfy min replicas
    """
    settings = settings or CoordinatorSettings.from_env()
    min_replicas = normalize_min_replicas(settings.min_replicas)
    required_acks = required_peer_replications(min_replicas)
    peer_urls = normalize_peer_urls(settings.peer_urls, settings.port)
    assert_peer_capacity(min_replicas, len(peer_urls))

    if state is None:
        state = CoordinatorState(
            lease_ms=settings.lease_ms,
            store=open_store(settings.store_url),
            node_id=settings.node_id,
        )
    peers = PeerSynchronizer(
        state,
        peer_urls,
        token=settings.token,
        timeout_s=settings.peer_timeout_s,
        transport=transport,
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        # state calls write to the store, so they run off the event loop
        sweep = _every(settings.sweep_ms / 1000, "lease sweep", lambda: asyncio.to_thread(state.requeue_expired_leases))
        tasks = [asyncio.create_task(sweep)]
        if peer_urls:
            tasks.append(asyncio.create_task(_every(settings.peer_sync_ms / 1000, "peer sync", peers.sync_from_peers)))
            tasks.append(asyncio.create_task(peers.sync_from_peers()))
        logger.info("coordinator %s listening on %s:%d", state.node_id, settings.host, settings.port)
        logger.info("replication policy: min replicas %d (%d peer acks required)", min_replicas, required_acks)
        if peer_urls:
            logger.info("peers: %s", ", ".join(peer_urls))
        try:
            yield
        finally:
            for t in tasks:
                t.cancel()
            for t in tasks:
                with suppress(asyncio.CancelledError):
                    await t
            if state.store is not None:
                state.store.close()

    app = FastAPI(title="jobfleet coordinator", lifespan=lifespan)
    app.state.coordinator = state
    app.state.peers = peers

    async def check_token(x_jobfleet_token: Optional[str] = Header(default=None, alias=TOKEN_HEADER)) -> None:
        if settings.token and x_jobfleet_token != settings.token:
            raise HTTPException(status_code=401, detail="unauthorized")

    async def replicate() -> None:
        if not peer_urls:
            # assert_peer_capacity guarantees no acks are required here
            return
        outcome = await peers.replicate()
        require_quorum(outcome, required_acks)

    # -------------------- Errors --------------------

    @app.exception_handler(CoordinatorError)
    async def coordinator_error(request: Request, exc: CoordinatorError):
        if exc.retriable:
            logger.warning("%s %s: %s", request.method, request.url.path, exc.message)
        return JSONResponse(status_code=exc.status_code, content={"detail": exc.message, "kind": exc.kind})

    @app.exception_handler(RequestValidationError)
    async def request_validation_error(request: Request, exc: RequestValidationError):
        return JSONResponse(status_code=400, content={"detail": str(exc.errors()), "kind": "validation_error"})

    # -------------------- Endpoints --------------------

    auth = [Depends(check_token)]

    @app.get("/health", dependencies=auth)
    async def health():
        return {"ok": True, "nodeId": state.node_id}

    @app.get("/v1/state", dependencies=auth)
    def get_state():
        return state.snapshot().to_dict()

    @app.post("/v1/replicate/snapshot", dependencies=auth)
    async def replicate_snapshot(request: Request):
        try:
            body = await request.json()
        except ValueError:
            body = None
        changed = await run_in_threadpool(state.merge_snapshot, body)
        return {"ok": True, "changed": changed, "nodeId": state.node_id}

    @app.post("/v1/hosts/register", dependencies=auth)
    async def register_host(req: RegisterHostRequest):
        host = await run_in_threadpool(
            state.register_host,
            name=req.name,
            capabilities=req.capabilities,
            max_parallel=req.maxParallel,
            host_id=req.hostId,
        )
        await replicate()
        return {"host": host.to_dict()}

    @app.post("/v1/hosts/{host_id}/heartbeat", dependencies=auth)
    async def heartbeat(host_id: str, req: Optional[HeartbeatRequest] = None):
        host = await run_in_threadpool(state.heartbeat, host_id, req.activeLeases if req else None)
        await replicate()
        return {"host": host.to_dict()}

    @app.post("/v1/jobs", dependencies=auth)
    async def enqueue_job(req: EnqueueJobRequest):
        payload = payload_from_dict(req.payload)
        requirement = req.requirement.requiredCapabilities if req.requirement else None
        job = await run_in_threadpool(state.enqueue_job, payload, requirement)
        await replicate()
        return {"job": job.to_dict()}

    @app.post("/v1/hosts/{host_id}/claim", dependencies=auth)
    async def claim(host_id: str):
        job = await run_in_threadpool(state.claim_job, host_id)
        if job is None:
            return {"job": None}
        await replicate()
        return {"job": job.to_dict()}

    @app.post("/v1/jobs/{job_id}/complete", dependencies=auth)
    async def complete(job_id: str, req: CompleteRequest):
        job = await run_in_threadpool(
            state.complete_job,
            job_id,
            host_id=req.hostId,
            success=req.success,
            duration_ms=req.durationMs,
            exit_code=req.exitCode,
            stdout=req.stdout,
            stderr=req.stderr,
            error=req.error,
        )
        await replicate()
        return {"job": job.to_dict()}

    @app.get("/v1/jobs/{job_id}", dependencies=auth)
    def get_job(job_id: str):
        return {"job": state.get_job(job_id).to_dict()}

    return app
