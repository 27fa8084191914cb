"""
Routing Decision Function

Answers "which release serves this request", in priority order:

1. explicit override (never persisted)
2. sticky assignment from the store, if its version is still valid
3. fresh bucket compared with the rollout percentage, then persisted

The router holds no state of its own. Store failures degrade to step 3;
nothing on this path fails the request because stickiness is unavailable.
"""
from typing import Callable, Optional
from dataclasses import dataclass
from enum import Enum

from config import settings
from logger import get_logger

from .assignment_store import AssignmentStore, ClientAssignment
from .bucketing import bucket_of, in_rollout
from .events import DecisionEventPublisher
from .exceptions import InvalidInput, StoreUnavailable
from .rollout import DecisionInput, RolloutController, RolloutStatus

logger = get_logger(__name__)


class DecisionReason(Enum):
    """Why a version was chosen"""
    OVERRIDE = "override"
    STICKY = "sticky"
    BUCKETED = "bucketed"


@dataclass(frozen=True)
class RoutingRequest:
    """
    Request descriptor

    ``client_id`` is the resolved opaque identifier (see identity.py);
    ``override`` pins a version for this request only.
    """
    client_id: Optional[str]
    override: Optional[str] = None


@dataclass(frozen=True)
class RoutingDecision:
    client_id: Optional[str]
    chosen_version: str
    reason: DecisionReason


@dataclass(frozen=True)
class StickyCookie:
    """Instruction to set the sticky assignment cookie on the response"""
    name: str
    value: str
    max_age: int


@dataclass(frozen=True)
class RoutingResult:
    decision: RoutingDecision
    cookie: Optional[StickyCookie] = None


class TrafficRouter:
    """
    Composes controller, store and bucketing into a routing decision

    Example:
        router = TrafficRouter(controller, InMemoryAssignmentStore())
        result = router.route(RoutingRequest(client_id="user:42"))
        result.decision.chosen_version   # "v1" or "v2"
        result.cookie                    # set only for a new binding
    """

    def __init__(
        self,
        controller: RolloutController,
        store: AssignmentStore,
        publisher: Optional[DecisionEventPublisher] = None,
        bucketer: Optional[Callable[[str], int]] = None,
        cookie_name: Optional[str] = None
    ):
        self.controller = controller
        self.store = store
        self.publisher = publisher if publisher is not None else DecisionEventPublisher()
        self._bucketer = bucketer or (lambda client_id: bucket_of(client_id, settings.bucketing_salt))
        self.cookie_name = cookie_name or settings.sticky_cookie_name

    def route(self, request: RoutingRequest) -> RoutingResult:
        """
        Decide which version serves a request

        Raises:
            InvalidInput: No override and no usable client id; the caller
                must resolve a fallback identifier first
        """
        if request.override:
            decision = RoutingDecision(request.client_id, request.override, DecisionReason.OVERRIDE)
            return self._finish(decision)

        client_id = request.client_id
        if not isinstance(client_id, str) or not client_id:
            raise InvalidInput("client_id is required when no override is given")

        snapshot = self.controller.current_decision_input()

        assignment = self._lookup(client_id)
        if assignment is not None:
            if assignment.bound_version in snapshot.valid_versions:
                decision = RoutingDecision(client_id, assignment.bound_version, DecisionReason.STICKY)
                return self._finish(decision)
            # Bound to a retired or rolled-back version
            self._discard(client_id)

        version = self._choose(snapshot, self._bucketer(client_id))
        decision = RoutingDecision(client_id, version, DecisionReason.BUCKETED)

        cookie = None
        if snapshot.candidate is not None and self._bind(client_id, version):
            cookie = StickyCookie(
                name=self.cookie_name,
                value=version,
                max_age=self.store.ttl_seconds,
            )
        return self._finish(decision, cookie)

    def reset(self, client_id: str) -> bool:
        """Drop a client's sticky binding so its next request re-buckets"""
        try:
            return self.store.evict(client_id)
        except StoreUnavailable as e:
            logger.warning(f"Could not reset sticky assignment: {e}")
            return False

    @staticmethod
    def _choose(snapshot: DecisionInput, bucket: int) -> str:
        if snapshot.candidate is None or snapshot.status == RolloutStatus.ROLLED_BACK:
            return snapshot.baseline
        if snapshot.status == RolloutStatus.LIVE:
            return snapshot.candidate
        return snapshot.candidate if in_rollout(bucket, snapshot.percentage) else snapshot.baseline

    def _lookup(self, client_id: str) -> Optional[ClientAssignment]:
        try:
            return self.store.get(client_id)
        except StoreUnavailable as e:
            logger.debug(f"Sticky lookup unavailable, re-bucketing: {e}")
            return None

    def _discard(self, client_id: str):
        try:
            self.store.evict(client_id)
        except StoreUnavailable as e:
            logger.debug(f"Could not evict stale assignment: {e}")

    def _bind(self, client_id: str, version: str) -> bool:
        try:
            self.store.put(client_id, version)
            return True
        except StoreUnavailable as e:
            logger.debug(f"Could not persist sticky assignment: {e}")
            return False

    def _finish(self, decision: RoutingDecision, cookie: Optional[StickyCookie] = None) -> RoutingResult:
        self.publisher.publish(
            decision.client_id or "anonymous",
            decision.chosen_version,
            decision.reason.value,
        )
        return RoutingResult(decision=decision, cookie=cookie)
