"""
Rollback Sweep

After a rollback, every sticky binding to the rolled-back candidate is purged
so nobody keeps being served it. The controller only triggers the purge; the
sweep itself runs on a background worker and may complete partially. Routing
is already correct meanwhile, because the router ignores bindings to a
rolled-back candidate.
"""
from typing import Any, Dict, List, Optional
from concurrent.futures import Future, ThreadPoolExecutor, wait
from dataclasses import dataclass
from datetime import datetime
import threading

from logger import get_logger
from metrics import rollback_evictions

from .assignment_store import AssignmentStore
from .exceptions import StoreUnavailable
from .rollout import RolloutController, RolloutState

logger = get_logger(__name__)


@dataclass
class RollbackResult:
    """Outcome of one rollback sweep"""
    rollout_id: Optional[str]
    candidate_version: str
    baseline_version: str
    reason: str
    started_at: datetime
    completed_at: Optional[datetime] = None
    success: bool = False
    error: Optional[str] = None
    evicted: int = 0
    # Store-clock time of the rollback; later bindings belong to a newer rollout
    cutoff: Optional[float] = None

    @property
    def duration_seconds(self) -> Optional[float]:
        if self.completed_at is None:
            return None
        return (self.completed_at - self.started_at).total_seconds()


class RollbackSweeper:
    """
    Purges candidate stickiness when a rollout is rolled back

    Example:
        sweeper = RollbackSweeper(store)
        sweeper.attach(controller)

        controller.rollback(reason="error rate above threshold")
        sweeper.wait()          # optional, e.g. in tests

        sweeper.get_rollback_history()
    """

    def __init__(self, store: AssignmentStore, background: bool = True):
        """
        Args:
            store: Assignment store to purge
            background: Run sweeps on a worker thread; False sweeps inline
        """
        self.store = store
        self._executor = (
            ThreadPoolExecutor(max_workers=1, thread_name_prefix="rollback-sweep")
            if background else None
        )
        self._lock = threading.Lock()
        self._history: List[RollbackResult] = []
        self._pending: List[Future] = []

    def attach(self, controller: RolloutController):
        controller.add_rollback_listener(self.on_rollback)

    def on_rollback(self, state: RolloutState) -> Optional[RollbackResult]:
        """Rollback listener: schedule the sweep for the rolled-back candidate"""
        if state.candidate_version is None:
            return None

        result = RollbackResult(
            rollout_id=state.rollout_id,
            candidate_version=state.candidate_version,
            baseline_version=state.baseline_version,
            reason=state.reason,
            started_at=datetime.utcnow(),
            cutoff=self.store.now(),
        )
        with self._lock:
            self._history.append(result)

        if self._executor is None:
            return self._sweep(result)

        future = self._executor.submit(self._sweep, result)
        with self._lock:
            self._pending = [f for f in self._pending if not f.done()]
            self._pending.append(future)
        return result

    def _sweep(self, result: RollbackResult) -> RollbackResult:
        logger.info(f"Purging sticky assignments to {result.candidate_version}")

        try:
            result.evicted = self.store.evict_version(
                result.candidate_version, assigned_before=result.cutoff
            )
            result.success = True
            rollback_evictions.inc(result.evicted)
            logger.info(
                f"Rollback sweep for {result.candidate_version} evicted "
                f"{result.evicted} assignments"
            )
        except StoreUnavailable as e:
            result.error = str(e)
            logger.error(f"Rollback sweep for {result.candidate_version} incomplete: {e}")

        result.completed_at = datetime.utcnow()
        return result

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Block until scheduled sweeps finish; False on timeout"""
        with self._lock:
            pending = list(self._pending)
        if not pending:
            return True
        _, not_done = wait(pending, timeout=timeout)
        return not not_done

    def shutdown(self, wait_for_sweeps: bool = True):
        if self._executor is not None:
            self._executor.shutdown(wait=wait_for_sweeps)

    def get_rollback_history(
        self,
        candidate_version: Optional[str] = None,
        limit: int = 10
    ) -> List[RollbackResult]:
        """Most recent sweeps first"""
        with self._lock:
            history = list(self._history)

        if candidate_version:
            history = [r for r in history if r.candidate_version == candidate_version]

        history.sort(key=lambda r: r.started_at, reverse=True)
        return history[:limit]

    def get_last_rollback(self, candidate_version: str) -> Optional[RollbackResult]:
        history = self.get_rollback_history(candidate_version, limit=1)
        return history[0] if history else None

    def get_rollback_stats(self) -> Dict[str, Any]:
        with self._lock:
            history = list(self._history)

        finished = [r for r in history if r.completed_at is not None]
        successful = sum(1 for r in finished if r.success)

        return {
            "total_rollbacks": len(history),
            "successful": successful,
            "failed": len(finished) - successful,
            "in_progress": len(history) - len(finished),
            "success_rate": successful / len(finished) if finished else 0.0,
            "total_evicted": sum(r.evicted for r in finished),
        }
