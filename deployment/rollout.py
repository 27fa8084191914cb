"""
Rollout Controller

Owns the authoritative rollout state for a candidate/baseline pair and
enforces its state machine:

    idle -> ramping -> live
    ramping -> rolled_back
    live -> rolled_back

Request threads read an immutable RolloutState snapshot without locking;
operator writes are serialized and publish a new snapshot with a single
reference swap, so a reader never observes a torn
candidate/baseline/percentage triple.
"""
from typing import Callable, Dict, FrozenSet, List, NamedTuple, Optional, Any
from dataclasses import dataclass, field, replace
from enum import Enum
from datetime import datetime
from pathlib import Path
import json
import threading
import uuid

from config import settings
from logger import get_logger
from metrics import rollout_percentage, rollout_transitions

from .exceptions import InvalidInput, InvalidState, InvalidTransition

logger = get_logger(__name__)


class RolloutStatus(Enum):
    """Rollout lifecycle states"""
    IDLE = "idle"
    RAMPING = "ramping"
    LIVE = "live"
    ROLLED_BACK = "rolled_back"


class RolloutStateMachine:
    """Validates rollout status transitions"""

    VALID_TRANSITIONS = {
        RolloutStatus.IDLE: {RolloutStatus.RAMPING},
        RolloutStatus.RAMPING: {RolloutStatus.RAMPING, RolloutStatus.LIVE, RolloutStatus.ROLLED_BACK},
        RolloutStatus.LIVE: {RolloutStatus.ROLLED_BACK},
        RolloutStatus.ROLLED_BACK: set(),
    }

    # A new rollout must be started once one of these is reached
    TERMINAL_STATES = {RolloutStatus.LIVE, RolloutStatus.ROLLED_BACK}

    @classmethod
    def is_valid_transition(cls, from_status: RolloutStatus, to_status: RolloutStatus) -> bool:
        return to_status in cls.VALID_TRANSITIONS.get(from_status, set())

    @classmethod
    def is_terminal_state(cls, status: RolloutStatus) -> bool:
        return status in cls.TERMINAL_STATES

    @classmethod
    def is_active_state(cls, status: RolloutStatus) -> bool:
        return status == RolloutStatus.RAMPING


@dataclass(frozen=True)
class RolloutState:
    """Immutable snapshot of one rollout"""
    baseline_version: str
    candidate_version: Optional[str] = None
    target_percentage: int = 0
    status: RolloutStatus = RolloutStatus.IDLE
    rollout_id: Optional[str] = None
    started_at: Optional[datetime] = None
    updated_at: datetime = field(default_factory=datetime.utcnow)
    reason: str = ""

    @property
    def valid_versions(self) -> FrozenSet[str]:
        """Versions a sticky binding may still point at"""
        if self.candidate_version is None or self.status == RolloutStatus.ROLLED_BACK:
            return frozenset({self.baseline_version})
        return frozenset({self.candidate_version, self.baseline_version})

    def to_dict(self) -> Dict[str, Any]:
        return {
            "rollout_id": self.rollout_id,
            "candidate_version": self.candidate_version,
            "baseline_version": self.baseline_version,
            "target_percentage": self.target_percentage,
            "status": self.status.value,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "updated_at": self.updated_at.isoformat(),
            "reason": self.reason,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RolloutState":
        """
        Rebuild a snapshot from to_dict() output

        Raises:
            ValueError: Missing or inconsistent fields (InvalidInput is a ValueError)
        """
        status = RolloutStatus(data["status"])
        percentage = _validate_percentage(data.get("target_percentage", 0))
        candidate = data.get("candidate_version")
        baseline = _validate_version("baseline_version", data["baseline_version"])

        if status == RolloutStatus.IDLE:
            if candidate is not None or percentage != 0:
                raise InvalidInput("Idle rollout state cannot carry a candidate or percentage")
        else:
            _validate_version("candidate_version", candidate)
        if status == RolloutStatus.LIVE and percentage != 100:
            raise InvalidInput(f"Live rollout must be at 100%, got {percentage}")
        if status == RolloutStatus.ROLLED_BACK and percentage != 0:
            raise InvalidInput(f"Rolled back rollout must be at 0%, got {percentage}")
        if status == RolloutStatus.RAMPING and percentage == 100:
            raise InvalidInput("Ramping rollout cannot be at 100%")

        return cls(
            rollout_id=data.get("rollout_id"),
            candidate_version=candidate,
            baseline_version=baseline,
            target_percentage=percentage,
            status=status,
            started_at=datetime.fromisoformat(data["started_at"]) if data.get("started_at") else None,
            updated_at=datetime.fromisoformat(data["updated_at"]),
            reason=data.get("reason", ""),
        )


class DecisionInput(NamedTuple):
    """What the router needs from the controller, read in one step"""
    candidate: Optional[str]
    baseline: str
    percentage: int
    status: RolloutStatus
    valid_versions: FrozenSet[str]


@dataclass
class Deployment:
    """A candidate version registered for canary rollout"""
    version_id: str
    status: RolloutStatus
    registered_at: datetime
    archived_at: Optional[datetime] = None

    @property
    def archived(self) -> bool:
        return self.archived_at is not None


RollbackListener = Callable[[RolloutState], None]


def _validate_percentage(percentage: Any) -> int:
    if isinstance(percentage, bool) or not isinstance(percentage, int):
        raise InvalidInput(f"Percentage must be an integer, got {percentage!r}")
    if not 0 <= percentage <= 100:
        raise InvalidInput(f"Percentage must be within [0, 100], got {percentage}")
    return percentage


def _validate_version(name: str, version_id: Any) -> str:
    if not isinstance(version_id, str) or not version_id.strip():
        raise InvalidInput(f"{name} must be a non-empty string")
    return version_id


class RolloutController:
    """
    Single writer of rollout state

    Example:
        controller = RolloutController(default_version="v1")
        controller.start_rollout("v2", "v1", initial_percentage=5)
        controller.advance()            # next canary stage
        controller.set_percentage(50)
        controller.promote()            # 100% -> live

        snapshot = controller.current_decision_input()
    """

    def __init__(
        self,
        default_version: Optional[str] = None,
        canary_stages: Optional[List[int]] = None,
        state_path: Optional[Path] = None
    ):
        """
        Initialize rollout controller

        Args:
            default_version: Version served before any rollout has started
            canary_stages: Percentage milestones used by advance()
            state_path: Optional JSON file the state is persisted to
        """
        self.default_version = default_version or settings.default_version
        self.canary_stages = sorted(canary_stages or settings.canary_stages)

        state_path = state_path or settings.rollout_state_path
        self.state_path = Path(state_path) if state_path else None

        self._write_lock = threading.Lock()
        self._state = RolloutState(baseline_version=self.default_version)
        self._history: List[RolloutState] = []
        self._deployments: Dict[str, Deployment] = {}
        self._rollback_listeners: List[RollbackListener] = []

        if self.state_path:
            self._load_state()

        rollout_percentage.set(self._state.target_percentage)

    # Read side

    def current_decision_input(self) -> DecisionInput:
        """Atomic read-only snapshot for the routing path"""
        state = self._state
        return DecisionInput(
            candidate=state.candidate_version,
            baseline=state.baseline_version,
            percentage=state.target_percentage,
            status=state.status,
            valid_versions=state.valid_versions,
        )

    def status(self) -> RolloutState:
        """Current rollout state snapshot"""
        return self._state

    def history(self) -> List[RolloutState]:
        """Archived rollouts, oldest first"""
        return list(self._history)

    def deployments(self) -> List[Deployment]:
        return list(self._deployments.values())

    def get_deployment(self, version_id: str) -> Optional[Deployment]:
        return self._deployments.get(version_id)

    def add_rollback_listener(self, listener: RollbackListener):
        """Register a callback run after every rollback (e.g. the binding sweep)"""
        self._rollback_listeners.append(listener)

    # Write side

    def start_rollout(
        self,
        candidate: str,
        baseline: str,
        initial_percentage: int = 0
    ) -> RolloutState:
        """
        Begin a canary rollout of candidate against baseline

        Raises:
            InvalidInput: Empty or identical versions, percentage out of range
            InvalidState: A rollout is already ramping
        """
        _validate_version("candidate", candidate)
        _validate_version("baseline", baseline)
        if candidate == baseline:
            raise InvalidInput("candidate and baseline must differ")
        _validate_percentage(initial_percentage)

        with self._write_lock:
            current = self._state
            if RolloutStateMachine.is_active_state(current.status):
                raise InvalidState(
                    f"Rollout of {current.candidate_version} against "
                    f"{current.baseline_version} is already active"
                )

            if current.status != RolloutStatus.IDLE:
                self._history.append(current)

            now = datetime.utcnow()
            state = RolloutState(
                rollout_id=uuid.uuid4().hex,
                candidate_version=candidate,
                baseline_version=baseline,
                target_percentage=initial_percentage,
                status=RolloutStatus.RAMPING,
                started_at=now,
                updated_at=now,
            )
            self._deployments[candidate] = Deployment(
                version_id=candidate,
                status=RolloutStatus.RAMPING,
                registered_at=now,
            )
            if initial_percentage == 100:
                state = replace(state, status=RolloutStatus.LIVE)
            self._commit(state)

        logger.info(
            f"Started rollout {state.rollout_id}: {candidate} against {baseline} "
            f"at {initial_percentage}%"
        )
        return state

    def set_percentage(self, new_pct: int, rollout_id: Optional[str] = None) -> RolloutState:
        """
        Move the candidate's traffic share

        100 promotes the candidate (live); 0 pauses the rollout without
        aborting it.

        Args:
            new_pct: Target percentage
            rollout_id: Only act if this is still the current rollout

        Raises:
            InvalidInput: Percentage is not an int in [0, 100]
            InvalidState: rollout_id is no longer the current rollout
            InvalidTransition: Rollout is not ramping
        """
        _validate_percentage(new_pct)

        with self._write_lock:
            self._check_current(rollout_id)
            state = self._apply_percentage(new_pct, "set percentage")

        logger.info(
            f"Rollout {state.rollout_id} percentage set to {new_pct}% ({state.status.value})"
        )
        return state

    def promote(self) -> RolloutState:
        """Alias for set_percentage(100)"""
        return self.set_percentage(100)

    def advance(self) -> RolloutState:
        """
        Step to the next canary stage above the current percentage

        Raises:
            InvalidTransition: Rollout is not ramping
        """
        with self._write_lock:
            current = self._state
            next_stage = next(
                (s for s in self.canary_stages if s > current.target_percentage),
                100
            )
            state = self._apply_percentage(next_stage, "advance")

        logger.info(f"Rollout {state.rollout_id} advanced to {state.target_percentage}%")
        return state

    def rollback(self, reason: str = "", rollout_id: Optional[str] = None) -> RolloutState:
        """
        Abort the rollout: percentage forced to 0, status rolled_back

        Rollback listeners run after the new state is published; they purge
        sticky bindings to the candidate.

        Raises:
            InvalidState: rollout_id is no longer the current rollout
            InvalidTransition: Rollout is neither ramping nor live
        """
        with self._write_lock:
            self._check_current(rollout_id)
            current = self._state
            if not RolloutStateMachine.is_valid_transition(current.status, RolloutStatus.ROLLED_BACK):
                raise InvalidTransition("roll back", current.status)

            state = replace(
                current,
                target_percentage=0,
                status=RolloutStatus.ROLLED_BACK,
                updated_at=datetime.utcnow(),
                reason=reason,
            )
            self._commit(state)

        logger.warning(
            f"Rolled back {state.candidate_version} to {state.baseline_version}"
            + (f": {reason}" if reason else "")
        )

        for listener in self._rollback_listeners:
            try:
                listener(state)
            except Exception as e:
                logger.error(f"Rollback listener failed: {e}")

        return state

    def _check_current(self, rollout_id: Optional[str]):
        # Caller holds the write lock
        current = self._state
        if rollout_id is not None and current.rollout_id != rollout_id:
            raise InvalidState(
                f"Rollout {rollout_id} is no longer current "
                f"(current: {current.rollout_id}, {current.candidate_version})"
            )

    def _apply_percentage(self, new_pct: int, operation: str) -> RolloutState:
        # Caller holds the write lock
        current = self._state
        if not RolloutStateMachine.is_active_state(current.status):
            raise InvalidTransition(operation, current.status)

        status = RolloutStatus.LIVE if new_pct == 100 else RolloutStatus.RAMPING
        state = replace(
            current,
            target_percentage=new_pct,
            status=status,
            updated_at=datetime.utcnow(),
        )
        self._commit(state)
        return state

    def _commit(self, state: RolloutState):
        # Caller holds the write lock
        self._state = state

        deployment = self._deployments.get(state.candidate_version)
        if deployment is not None:
            deployment.status = state.status
            if RolloutStateMachine.is_terminal_state(state.status) and not deployment.archived:
                deployment.archived_at = state.updated_at

        rollout_percentage.set(state.target_percentage)
        rollout_transitions.labels(state.status.value).inc()
        self._save_state()

    # Persistence

    def _load_state(self):
        """Load rollout state from the state file"""
        if not self.state_path.exists():
            logger.info(f"No rollout state found at {self.state_path}")
            return

        try:
            with open(self.state_path, 'r') as f:
                data = json.load(f)

            # Parse everything before touching controller state
            history = [RolloutState.from_dict(item) for item in data.get("history", [])]
            current = (
                RolloutState.from_dict(data["current"]) if data.get("current")
                else self._state
            )
        except (OSError, KeyError, TypeError, ValueError, AttributeError) as e:
            logger.error(f"Error loading rollout state, starting idle: {e}")
            return

        self._history = history
        self._state = current

        for state in self._history + [self._state]:
            if state.candidate_version is None:
                continue
            archived_at = (
                state.updated_at
                if RolloutStateMachine.is_terminal_state(state.status) else None
            )
            self._deployments[state.candidate_version] = Deployment(
                version_id=state.candidate_version,
                status=state.status,
                registered_at=state.started_at or state.updated_at,
                archived_at=archived_at,
            )

        logger.info(
            f"Loaded rollout state from {self.state_path} "
            f"({self._state.status.value}, {self._state.target_percentage}%)"
        )

    def _save_state(self):
        """Write rollout state to the state file"""
        if not self.state_path:
            return

        try:
            self.state_path.parent.mkdir(parents=True, exist_ok=True)

            data = {
                "current": self._state.to_dict(),
                "history": [state.to_dict() for state in self._history],
            }

            with open(self.state_path, 'w') as f:
                json.dump(data, f, indent=2)

        except OSError as e:
            logger.error(f"Error saving rollout state: {e}")
