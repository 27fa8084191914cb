"""
Tests for the rollback sweep
"""
import threading
import pytest
from unittest.mock import MagicMock

from deployment import (
    InMemoryAssignmentStore,
    RollbackSweeper,
    RolloutController,
    StoreUnavailable
)


@pytest.fixture
def store():
    return InMemoryAssignmentStore(ttl_seconds=600, stripes=4)


@pytest.fixture
def controller():
    return RolloutController(default_version="v1")


class FakeClock:
    def __init__(self, now: float = 1_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


def bind(store, count, version, prefix="c"):
    for i in range(count):
        store.put(f"{prefix}-{version}-{i}", version)


def test_inline_sweep_evicts_only_candidate(store, controller):
    sweeper = RollbackSweeper(store, background=False)
    sweeper.attach(controller)
    controller.start_rollout("v2", "v1", initial_percentage=50)
    bind(store, 5, "v2")
    bind(store, 3, "v1")

    controller.rollback(reason="errors")

    assert len(store) == 3
    result = sweeper.get_last_rollback("v2")
    assert result.success
    assert result.evicted == 5
    assert result.reason == "errors"
    assert result.duration_seconds is not None


def test_background_sweep(store, controller):
    sweeper = RollbackSweeper(store, background=True)
    sweeper.attach(controller)
    controller.start_rollout("v2", "v1", initial_percentage=50)
    bind(store, 10, "v2")

    controller.rollback()
    assert sweeper.wait(timeout=5)
    sweeper.shutdown()

    assert len(store) == 0
    stats = sweeper.get_rollback_stats()
    assert stats["total_rollbacks"] == 1
    assert stats["successful"] == 1
    assert stats["in_progress"] == 0
    assert stats["total_evicted"] == 10


def test_wait_without_sweeps_returns_immediately(store):
    sweeper = RollbackSweeper(store)
    assert sweeper.wait(timeout=0.1)
    sweeper.shutdown()


def test_unavailable_store_recorded_as_failure(controller):
    store = MagicMock()
    store.evict_version.side_effect = StoreUnavailable("redis down")
    sweeper = RollbackSweeper(store, background=False)
    sweeper.attach(controller)
    controller.start_rollout("v2", "v1", initial_percentage=10)

    # Rollback itself still succeeds
    state = controller.rollback()
    assert state.status.value == "rolled_back"

    result = sweeper.get_last_rollback("v2")
    assert not result.success
    assert "redis down" in result.error
    stats = sweeper.get_rollback_stats()
    assert stats["failed"] == 1
    assert stats["success_rate"] == 0.0


def test_history_filter_and_order(store, controller):
    sweeper = RollbackSweeper(store, background=False)
    sweeper.attach(controller)

    controller.start_rollout("v2", "v1", initial_percentage=10)
    controller.rollback()
    controller.start_rollout("v3", "v1", initial_percentage=10)
    controller.rollback()

    history = sweeper.get_rollback_history()
    assert [r.candidate_version for r in history] == ["v3", "v2"]
    assert [r.candidate_version for r in sweeper.get_rollback_history("v2")] == ["v2"]
    assert sweeper.get_last_rollback("v9") is None


class GatedStore(InMemoryAssignmentStore):
    """Memory store whose version sweeps wait until released"""

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        self.release = threading.Event()

    def evict_version(self, version_id, assigned_before=None):
        self.release.wait(timeout=5)
        return super().evict_version(version_id, assigned_before=assigned_before)


def test_slow_sweep_spares_bindings_of_new_rollout(controller):
    clock = FakeClock()
    store = GatedStore(ttl_seconds=600, stripes=4, clock=clock)
    sweeper = RollbackSweeper(store, background=True)
    sweeper.attach(controller)

    controller.start_rollout("v2", "v1", initial_percentage=50)
    store.put("old-client", "v2")
    controller.rollback()

    # The sweep is still pending when v2 is rolled out again
    clock.now += 10
    controller.start_rollout("v2", "v1", initial_percentage=50)
    store.put("new-client", "v2")

    store.release.set()
    assert sweeper.wait(timeout=5)
    sweeper.shutdown()

    assert store.get("old-client") is None
    assert store.get("new-client").bound_version == "v2"
    assert sweeper.get_last_rollback("v2").evicted == 1
