from .replication import assert_peer_capacity, normalize_min_replicas, required_peer_replications
from .state import CoordinatorState
from .storage import CoordinatorStore, RedisStore, SqlStore, open_store

__all__ = [
    "CoordinatorState",
    "CoordinatorStore",
    "SqlStore",
    "RedisStore",
    "open_store",
    "normalize_min_replicas",
    "required_peer_replications",
    "assert_peer_capacity",
]
