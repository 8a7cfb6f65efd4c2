# coordinator/storage.py
from __future__ import annotations

import json
import logging
from abc import ABC, abstractmethod
from pathlib import Path
from typing import List, Optional

import redis
import sqlalchemy as sa
from sqlalchemy.engine import make_url
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, sessionmaker

from ..model import HostRecord, JobRecord, to_iso

logger = logging.getLogger(__name__)

DEFAULT_SQLITE_URL = "sqlite:///.jobfleet/coordinator.db"


class CoordinatorStore(ABC):
    """
    Durable per-entity persistence for the coordinator.

    Used only at startup (load_*) and as a write-through after every mutation (save_*).
    An empty store means first run.
    """

    @abstractmethod
    def save_host(self, host: HostRecord) -> None:
        pass

    @abstractmethod
    def save_job(self, job: JobRecord) -> None:
        pass

    @abstractmethod
    def load_hosts(self) -> List[HostRecord]:
        pass

    @abstractmethod
    def load_jobs(self) -> List[JobRecord]:
        """All jobs, oldest first."""
        pass

    def close(self) -> None:
        pass


# -------------------- SQL (SQLAlchemy) --------------------

class Base(DeclarativeBase):
    pass


class HostRow(Base):
    __tablename__ = "hosts"
    id: Mapped[str] = mapped_column(sa.Text, primary_key=True)
    json: Mapped[str] = mapped_column(sa.Text, nullable=False)


class JobRow(Base):
    __tablename__ = "jobs"
    id: Mapped[str] = mapped_column(sa.Text, primary_key=True)
    created_at: Mapped[str] = mapped_column(sa.Text, nullable=False, index=True)
    json: Mapped[str] = mapped_column(sa.Text, nullable=False)


def _ensure_sqlite_dir(url: str) -> None:
    parsed = make_url(url)
    if parsed.get_backend_name() != "sqlite":
        return
    database = parsed.database
    if database and database != ":memory:":
        Path(database).expanduser().resolve().parent.mkdir(parents=True, exist_ok=True)


class SqlStore(CoordinatorStore):
    """Hosts and jobs as JSON documents in two tables, via any SQLAlchemy URL."""

    def __init__(self, url: str = DEFAULT_SQLITE_URL):
        _ensure_sqlite_dir(url)
        self.engine = sa.create_engine(url, pool_pre_ping=True)
        if self.engine.dialect.name == "sqlite":
            with self.engine.begin() as conn:
                conn.exec_driver_sql("PRAGMA journal_mode=WAL")
        Base.metadata.create_all(self.engine)
        self.Session = sessionmaker(self.engine, expire_on_commit=False)

    def save_host(self, host: HostRecord) -> None:
        with self.Session.begin() as s:
            s.merge(HostRow(id=host.id, json=json.dumps(host.to_dict())))

    def save_job(self, job: JobRecord) -> None:
        with self.Session.begin() as s:
            s.merge(JobRow(id=job.id, created_at=to_iso(job.created_at), json=json.dumps(job.to_dict())))

    def load_hosts(self) -> List[HostRecord]:
        with self.Session() as s:
            rows = s.scalars(sa.select(HostRow)).all()
            return [HostRecord.from_dict(json.loads(r.json)) for r in rows]

    def load_jobs(self) -> List[JobRecord]:
        with self.Session() as s:
            rows = s.scalars(sa.select(JobRow).order_by(JobRow.created_at)).all()
            return [JobRecord.from_dict(json.loads(r.json)) for r in rows]

    def close(self) -> None:
        self.engine.dispose()


# -------------------- Redis --------------------

class RedisStore(CoordinatorStore):
    """Hosts and jobs as JSON values in two Redis hashes keyed by id."""

    def __init__(self, url: str, prefix: str = "jobfleet", client: Optional[redis.Redis] = None):
        self.r = client if client is not None else redis.from_url(url, decode_responses=True)
        self.prefix = prefix

    @property
    def hosts_key(self) -> str:
        return f"{self.prefix}:hosts"

    @property
    def jobs_key(self) -> str:
        return f"{self.prefix}:jobs"

    def save_host(self, host: HostRecord) -> None:
        self.r.hset(self.hosts_key, host.id, json.dumps(host.to_dict()))

    def save_job(self, job: JobRecord) -> None:
        self.r.hset(self.jobs_key, job.id, json.dumps(job.to_dict()))

    def load_hosts(self) -> List[HostRecord]:
        raw = self.r.hgetall(self.hosts_key) or {}
        return [HostRecord.from_dict(json.loads(v)) for v in raw.values()]

    def load_jobs(self) -> List[JobRecord]:
        raw = self.r.hgetall(self.jobs_key) or {}
        jobs = [JobRecord.from_dict(json.loads(v)) for v in raw.values()]
        return sorted(jobs, key=lambda j: j.created_at)

    def close(self) -> None:
        self.r.close()


def open_store(url: Optional[str]) -> Optional[CoordinatorStore]:
    """
    Pick a backend from the URL scheme.

    Returns:
        RedisStore for redis:// and rediss://, SqlStore for any other URL,
        None (memory only) when url is empty
    """
    if not url:
        return None
    if url.startswith(("redis://", "rediss://")):
        logger.info("using redis store")
        return RedisStore(url)
    logger.info("using sql store (%s)", make_url(url).get_backend_name())
    return SqlStore(url)
