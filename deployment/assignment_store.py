"""
Sticky Assignment Store

Keeps the version a client was bound to for a bounded TTL window so the
client keeps seeing the same release for the rest of its session.

Stickiness is best-effort: backend failures surface as StoreUnavailable and
the router falls back to fresh bucketing.
"""
from abc import ABC, abstractmethod
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional
import json
import threading
import time
import zlib

from redis import ConnectionPool, Redis
from redis.exceptions import RedisError

from circuit_breaker import CircuitBreaker, CircuitBreakerError
from config import settings
from logger import get_logger
from metrics import assignments_created, store_errors

from .exceptions import StoreUnavailable

logger = get_logger(__name__)


@dataclass(frozen=True)
class ClientAssignment:
    """Sticky binding of one client to one version"""
    client_id: str
    bound_version: str
    assigned_at: float
    expires_at: float

    def is_expired(self, now: float) -> bool:
        return now >= self.expires_at

    def to_dict(self) -> Dict[str, Any]:
        return {
            "version": self.bound_version,
            "assigned_at": self.assigned_at,
            "expires_at": self.expires_at,
        }

    @classmethod
    def from_dict(cls, client_id: str, data: Dict[str, Any]) -> "ClientAssignment":
        return cls(
            client_id=client_id,
            bound_version=str(data["version"]),
            assigned_at=float(data["assigned_at"]),
            expires_at=float(data["expires_at"]),
        )


AssignmentListener = Callable[[ClientAssignment], None]


class AssignmentStore(ABC):
    """
    Base class for assignment stores

    Subclasses implement the storage; this class owns TTL bookkeeping and the
    put event that feeds the per-version assignment metrics.
    """

    def __init__(self, ttl_seconds: Optional[int] = None, clock: Callable[[], float] = time.time):
        self.ttl_seconds = ttl_seconds or settings.assignment_ttl_seconds
        self._clock = clock
        self._listeners: List[AssignmentListener] = []

    @abstractmethod
    def get(self, client_id: str) -> Optional[ClientAssignment]:
        """Return the live binding for a client, or None if absent or expired"""

    @abstractmethod
    def put(self, client_id: str, version_id: str) -> ClientAssignment:
        """Create or overwrite a binding and restart its TTL"""

    @abstractmethod
    def evict(self, client_id: str) -> bool:
        """Remove a client's binding; returns True if one existed"""

    @abstractmethod
    def evict_version(self, version_id: str, assigned_before: Optional[float] = None) -> int:
        """
        Remove bindings to a version; returns how many were removed

        Args:
            version_id: Version whose bindings are purged
            assigned_before: Keep bindings made after this store-clock time
        """

    @abstractmethod
    def check_health(self) -> bool:
        """Whether the backend is reachable"""

    def now(self) -> float:
        """Current time on the store's clock"""
        return self._clock()

    @staticmethod
    def _sweepable(assignment: ClientAssignment, version_id: str, assigned_before: Optional[float]) -> bool:
        if assignment.bound_version != version_id:
            return False
        return assigned_before is None or assignment.assigned_at <= assigned_before

    def get_stats(self) -> Dict[str, Any]:
        return {"ttl_seconds": self.ttl_seconds}

    def close(self):
        pass

    def add_listener(self, listener: AssignmentListener):
        """Register a callback invoked after every successful put"""
        self._listeners.append(listener)

    def _new_assignment(self, client_id: str, version_id: str) -> ClientAssignment:
        now = self._clock()
        return ClientAssignment(
            client_id=client_id,
            bound_version=version_id,
            assigned_at=now,
            expires_at=now + self.ttl_seconds,
        )

    def _notify_put(self, assignment: ClientAssignment):
        assignments_created.labels(assignment.bound_version).inc()
        for listener in self._listeners:
            try:
                listener(assignment)
            except Exception as e:
                logger.error(f"Assignment listener failed: {e}")


class InMemoryAssignmentStore(AssignmentStore):
    """
    Process-local assignment store

    Entries are spread over lock-striped shards so requests for different
    clients rarely share a lock. Each shard is LRU-capped.
    """

    def __init__(
        self,
        ttl_seconds: Optional[int] = None,
        max_entries: Optional[int] = None,
        stripes: int = 64,
        clock: Callable[[], float] = time.time
    ):
        super().__init__(ttl_seconds=ttl_seconds, clock=clock)
        self.max_entries = max_entries or settings.max_memory_assignments
        self._stripes = stripes
        self._shard_capacity = max(1, self.max_entries // stripes)
        self._locks = [threading.Lock() for _ in range(stripes)]
        self._shards: List["OrderedDict[str, ClientAssignment]"] = [
            OrderedDict() for _ in range(stripes)
        ]

    def _index(self, client_id: str) -> int:
        return zlib.crc32(client_id.encode('utf-8')) % self._stripes

    def get(self, client_id: str) -> Optional[ClientAssignment]:
        i = self._index(client_id)
        with self._locks[i]:
            shard = self._shards[i]
            assignment = shard.get(client_id)
            if assignment is None:
                return None
            if assignment.is_expired(self._clock()):
                del shard[client_id]
                return None
            shard.move_to_end(client_id)
            return assignment

    def put(self, client_id: str, version_id: str) -> ClientAssignment:
        assignment = self._new_assignment(client_id, version_id)
        i = self._index(client_id)
        with self._locks[i]:
            shard = self._shards[i]
            shard[client_id] = assignment
            shard.move_to_end(client_id)
            while len(shard) > self._shard_capacity:
                shard.popitem(last=False)

        self._notify_put(assignment)
        return assignment

    def evict(self, client_id: str) -> bool:
        i = self._index(client_id)
        with self._locks[i]:
            return self._shards[i].pop(client_id, None) is not None

    def evict_version(self, version_id: str, assigned_before: Optional[float] = None) -> int:
        # One shard at a time; request threads keep running in between
        evicted = 0
        for lock, shard in zip(self._locks, self._shards):
            with lock:
                stale = [
                    cid for cid, a in shard.items()
                    if self._sweepable(a, version_id, assigned_before)
                ]
                for cid in stale:
                    del shard[cid]
            evicted += len(stale)
        return evicted

    def clear_expired(self) -> int:
        """Drop expired entries from every shard"""
        now = self._clock()
        cleared = 0
        for lock, shard in zip(self._locks, self._shards):
            with lock:
                expired = [cid for cid, a in shard.items() if a.is_expired(now)]
                for cid in expired:
                    del shard[cid]
            cleared += len(expired)

        if cleared:
            logger.info(f"Cleared {cleared} expired sticky assignments")
        return cleared

    def check_health(self) -> bool:
        return True

    def get_stats(self) -> Dict[str, Any]:
        stats = super().get_stats()
        stats.update({
            "backend": "memory",
            "entries": len(self),
            "max_entries": self.max_entries,
        })
        return stats

    def __len__(self) -> int:
        return sum(len(shard) for shard in self._shards)


class RedisAssignmentStore(AssignmentStore):
    """
    Redis-backed assignment store shared by every router instance

    Layout:
        canary:assignment:<client_id>  JSON binding, expires with the TTL
        canary:version:<version_id>    set of client ids bound to the version,
                                       read by the rollback sweep

    Every call has a bounded socket timeout and goes through a circuit
    breaker, so a dead Redis costs at most one timeout per request until the
    circuit opens.
    """

    KEY_PREFIX = "canary:assignment:"
    INDEX_PREFIX = "canary:version:"
    SWEEP_BATCH_SIZE = 100

    def __init__(
        self,
        redis_url: Optional[str] = None,
        ttl_seconds: Optional[int] = None,
        timeout: Optional[float] = None,
        client: Optional[Redis] = None,
        circuit_breaker: Optional[CircuitBreaker] = None,
        max_connections: int = 50,
        clock: Callable[[], float] = time.time
    ):
        super().__init__(ttl_seconds=ttl_seconds, clock=clock)

        if client is None:
            timeout = timeout or settings.raw.assignment_store_timeout
            pool = ConnectionPool.from_url(
                redis_url or settings.redis_url,
                max_connections=max_connections,
                socket_connect_timeout=timeout,
                socket_timeout=timeout,
                health_check_interval=30
            )
            client = Redis(connection_pool=pool)
            logger.info(f"Redis assignment store pool created (timeout={timeout}s)")

        self._client = client
        self._breaker = circuit_breaker or CircuitBreaker(
            name="assignment_store",
            failure_threshold=settings.store_circuit_breaker_threshold,
            recovery_timeout=settings.store_circuit_breaker_timeout,
            expected_exception=(RedisError,)
        )

    def _key(self, client_id: str) -> str:
        return f"{self.KEY_PREFIX}{client_id}"

    def _index_key(self, version_id: str) -> str:
        return f"{self.INDEX_PREFIX}{version_id}"

    def _execute(self, operation: str, func: Callable, *args, **kwargs):
        try:
            return self._breaker.call(func, *args, **kwargs)
        except CircuitBreakerError as e:
            store_errors.labels(operation).inc()
            raise StoreUnavailable(str(e)) from e
        except RedisError as e:
            store_errors.labels(operation).inc()
            logger.debug(f"Redis {operation} failed: {e}")
            raise StoreUnavailable(f"Assignment store {operation} failed: {e}") from e

    def _decode(self, client_id: str, raw: Any) -> ClientAssignment:
        if isinstance(raw, bytes):
            raw = raw.decode('utf-8')
        try:
            return ClientAssignment.from_dict(client_id, json.loads(raw))
        except (KeyError, TypeError, ValueError) as e:
            raise ValueError(f"Corrupted assignment for {client_id}: {e}")

    def get(self, client_id: str) -> Optional[ClientAssignment]:
        raw = self._execute("get", self._client.get, self._key(client_id))
        if raw is None:
            return None

        try:
            assignment = self._decode(client_id, raw)
        except ValueError as e:
            logger.error(str(e))
            self._execute("delete", self._client.delete, self._key(client_id))
            return None

        if assignment.is_expired(self._clock()):
            return None
        return assignment

    def put(self, client_id: str, version_id: str) -> ClientAssignment:
        assignment = self._new_assignment(client_id, version_id)
        self._execute("put", self._write, assignment)
        self._notify_put(assignment)
        return assignment

    def _write(self, assignment: ClientAssignment):
        key = self._key(assignment.client_id)
        previous = self._client.set(
            key, json.dumps(assignment.to_dict()), ex=self.ttl_seconds, get=True
        )

        pipe = self._client.pipeline(transaction=False)
        index_key = self._index_key(assignment.bound_version)
        pipe.sadd(index_key, assignment.client_id)
        pipe.expire(index_key, self.ttl_seconds)
        if previous is not None:
            try:
                old_version = self._decode(assignment.client_id, previous).bound_version
            except ValueError:
                old_version = None
            if old_version and old_version != assignment.bound_version:
                pipe.srem(self._index_key(old_version), assignment.client_id)
        pipe.execute()

    def evict(self, client_id: str) -> bool:
        return self._execute("evict", self._delete, client_id)

    def _delete(self, client_id: str) -> bool:
        previous = self._client.getdel(self._key(client_id))
        if previous is None:
            return False
        try:
            version_id = self._decode(client_id, previous).bound_version
            self._client.srem(self._index_key(version_id), client_id)
        except ValueError:
            pass
        return True

    def evict_version(self, version_id: str, assigned_before: Optional[float] = None) -> int:
        return self._execute("evict_version", self._sweep_version, version_id, assigned_before)

    def _sweep_version(self, version_id: str, assigned_before: Optional[float]) -> int:
        index_key = self._index_key(version_id)
        evicted = 0
        batch: List[str] = []

        for member in self._client.sscan_iter(index_key, count=self.SWEEP_BATCH_SIZE):
            batch.append(member.decode('utf-8') if isinstance(member, bytes) else member)
            if len(batch) >= self.SWEEP_BATCH_SIZE:
                evicted += self._evict_batch(version_id, batch, assigned_before)
                batch = []
        if batch:
            evicted += self._evict_batch(version_id, batch, assigned_before)

        # No final delete of the index: members added during the scan must survive
        return evicted

    def _evict_batch(self, version_id: str, client_ids: List[str], assigned_before: Optional[float]) -> int:
        values = self._client.mget([self._key(cid) for cid in client_ids])
        stale = []
        unindexed = []
        for cid, raw in zip(client_ids, values):
            if raw is None:
                unindexed.append(cid)
                continue
            try:
                assignment = self._decode(cid, raw)
            except ValueError:
                stale.append(cid)
                continue
            if self._sweepable(assignment, version_id, assigned_before):
                stale.append(cid)
            elif assignment.bound_version != version_id:
                # Rebound to another version since indexing
                unindexed.append(cid)

        if stale:
            self._client.delete(*[self._key(cid) for cid in stale])
        if stale or unindexed:
            self._client.srem(self._index_key(version_id), *(stale + unindexed))
        return len(stale)

    def check_health(self) -> bool:
        try:
            return bool(self._client.ping())
        except RedisError:
            logger.warning("Redis assignment store health check failed")
            return False

    def get_stats(self) -> Dict[str, Any]:
        stats = super().get_stats()
        stats.update({
            "backend": "redis",
            "circuit_state": self._breaker.state.value,
        })
        return stats

    def close(self):
        try:
            self._client.close()
        except RedisError as e:
            logger.debug(f"Error closing Redis client: {e}")


def create_assignment_store(redis_url: Optional[str] = None) -> AssignmentStore:
    """Build the store configured by settings: Redis when a URL is set, memory otherwise"""
    redis_url = redis_url or settings.redis_url
    if redis_url:
        return RedisAssignmentStore(redis_url=redis_url)

    logger.info("No redis_url configured, using in-memory assignment store")
    return InMemoryAssignmentStore()
