"""
Tests for the Redis assignment store against a mocked client

Covers key layout, the version index used by rollback sweeps, and the
degradation of backend failures to StoreUnavailable.
"""
import json
import pytest
from unittest.mock import MagicMock
from redis.exceptions import ConnectionError as RedisConnectionError, TimeoutError as RedisTimeoutError

from circuit_breaker import CircuitBreaker
from deployment import RedisAssignmentStore, StoreUnavailable


NOW = 1_000_000.0


def payload(version: str, assigned_at: float = NOW, ttl: int = 60) -> bytes:
    return json.dumps({
        "version": version,
        "assigned_at": assigned_at,
        "expires_at": assigned_at + ttl,
    }).encode('utf-8')


@pytest.fixture
def client():
    return MagicMock()


@pytest.fixture
def breaker():
    return CircuitBreaker(name="test_store", failure_threshold=3, recovery_timeout=30)


@pytest.fixture
def store(client, breaker):
    return RedisAssignmentStore(
        ttl_seconds=60,
        client=client,
        circuit_breaker=breaker,
        clock=lambda: NOW
    )


def test_get_returns_assignment(store, client):
    client.get.return_value = payload("v2")
    assignment = store.get("client-1")
    client.get.assert_called_once_with("canary:assignment:client-1")
    assert assignment.bound_version == "v2"
    assert assignment.client_id == "client-1"


def test_get_missing(store, client):
    client.get.return_value = None
    assert store.get("client-1") is None


def test_get_corrupted_entry_is_deleted(store, client):
    client.get.return_value = b"not-json"
    assert store.get("client-1") is None
    client.delete.assert_called_once_with("canary:assignment:client-1")


def test_get_expired_by_clock(store, client):
    client.get.return_value = payload("v2", assigned_at=NOW - 120)
    assert store.get("client-1") is None


def test_put_writes_binding_and_index(store, client):
    client.set.return_value = None
    pipe = client.pipeline.return_value

    assignment = store.put("client-1", "v2")

    args, kwargs = client.set.call_args
    assert args[0] == "canary:assignment:client-1"
    assert json.loads(args[1])["version"] == "v2"
    assert kwargs == {"ex": 60, "get": True}
    pipe.sadd.assert_called_once_with("canary:version:v2", "client-1")
    pipe.expire.assert_called_once_with("canary:version:v2", 60)
    pipe.srem.assert_not_called()
    pipe.execute.assert_called_once()
    assert assignment.expires_at == NOW + 60


def test_put_rebinding_removes_old_index_entry(store, client):
    client.set.return_value = payload("v1")
    pipe = client.pipeline.return_value

    store.put("client-1", "v2")

    pipe.srem.assert_called_once_with("canary:version:v1", "client-1")


def test_put_emits_event(store, client):
    client.set.return_value = None
    seen = []
    store.add_listener(seen.append)
    store.put("client-1", "v2")
    assert [a.bound_version for a in seen] == ["v2"]


def test_evict(store, client):
    client.getdel.return_value = payload("v2")
    assert store.evict("client-1") is True
    client.srem.assert_called_once_with("canary:version:v2", "client-1")

    client.getdel.return_value = None
    assert store.evict("client-2") is False


def test_evict_version_skips_rebound_clients(store, client):
    client.sscan_iter.return_value = iter([b"a", b"b", b"c"])
    client.mget.return_value = [payload("v2"), payload("v1"), None]

    evicted = store.evict_version("v2")

    assert evicted == 1
    client.delete.assert_called_once_with("canary:assignment:a")
    client.srem.assert_called_once_with("canary:version:v2", "a", "b", "c")


def test_evict_version_keeps_bindings_after_cutoff(store, client):
    client.sscan_iter.return_value = iter([b"old", b"fresh"])
    client.mget.return_value = [payload("v2", assigned_at=NOW - 10), payload("v2", assigned_at=NOW + 5)]

    evicted = store.evict_version("v2", assigned_before=NOW)

    assert evicted == 1
    client.delete.assert_called_once_with("canary:assignment:old")
    # The fresh binding stays indexed and the index itself is never dropped
    client.srem.assert_called_once_with("canary:version:v2", "old")


def test_timeout_degrades_to_store_unavailable(store, client):
    client.get.side_effect = RedisTimeoutError("timed out")
    with pytest.raises(StoreUnavailable):
        store.get("client-1")


def test_put_failure_emits_no_event(store, client):
    client.set.side_effect = RedisConnectionError("down")
    seen = []
    store.add_listener(seen.append)
    with pytest.raises(StoreUnavailable):
        store.put("client-1", "v2")
    assert seen == []


def test_circuit_opens_after_repeated_failures(store, client, breaker):
    client.get.side_effect = RedisConnectionError("down")
    for _ in range(3):
        with pytest.raises(StoreUnavailable):
            store.get("client-1")

    assert breaker.is_open
    client.get.reset_mock()

    with pytest.raises(StoreUnavailable):
        store.get("client-1")
    # Open circuit short-circuits without touching Redis
    client.get.assert_not_called()


def test_health_check(store, client):
    client.ping.return_value = True
    assert store.check_health() is True

    client.ping.side_effect = RedisConnectionError("down")
    assert store.check_health() is False


def test_stats_report_circuit_state(store):
    stats = store.get_stats()
    assert stats["backend"] == "redis"
    assert stats["circuit_state"] == "closed"
