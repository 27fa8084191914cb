"""
Deployment Module

Canary release routing: deterministic bucketing, sticky assignments, an
operator-driven rollout controller and the per-request routing decision.

Quick Start:
    from deployment import (
        RolloutController, InMemoryAssignmentStore, TrafficRouter, RoutingRequest
    )

    controller = RolloutController(default_version="v1")
    store = InMemoryAssignmentStore()
    router = TrafficRouter(controller, store)

    controller.start_rollout("v2", "v1", initial_percentage=10)

    result = router.route(RoutingRequest(client_id="user:123"))
    print(result.decision.chosen_version, result.decision.reason.value)
"""

from .exceptions import (
    RouterError,
    InvalidInput,
    InvalidTransition,
    InvalidState,
    StoreUnavailable
)

from .bucketing import bucket_of

from .identity import (
    IdentitySource,
    mint_client_cookie,
    resolve_client_id
)

from .assignment_store import (
    AssignmentStore,
    ClientAssignment,
    InMemoryAssignmentStore,
    RedisAssignmentStore,
    create_assignment_store
)

from .rollout import (
    RolloutController,
    RolloutState,
    RolloutStatus,
    RolloutStateMachine,
    DecisionInput,
    Deployment
)

from .router import (
    TrafficRouter,
    RoutingRequest,
    RoutingDecision,
    RoutingResult,
    DecisionReason,
    StickyCookie
)

from .events import (
    DecisionEvent,
    DecisionEventPublisher
)

from .rollback import (
    RollbackSweeper,
    RollbackResult
)

from .ramp import (
    AutoRamp,
    RampPhase,
    RampResult
)

__all__ = [
    # Errors
    "RouterError",
    "InvalidInput",
    "InvalidTransition",
    "InvalidState",
    "StoreUnavailable",

    # Bucketing and identity
    "bucket_of",
    "IdentitySource",
    "resolve_client_id",
    "mint_client_cookie",

    # Assignment store
    "AssignmentStore",
    "ClientAssignment",
    "InMemoryAssignmentStore",
    "RedisAssignmentStore",
    "create_assignment_store",

    # Rollout
    "RolloutController",
    "RolloutState",
    "RolloutStatus",
    "RolloutStateMachine",
    "DecisionInput",
    "Deployment",

    # Routing
    "TrafficRouter",
    "RoutingRequest",
    "RoutingDecision",
    "RoutingResult",
    "DecisionReason",
    "StickyCookie",

    # Events
    "DecisionEvent",
    "DecisionEventPublisher",

    # Rollback
    "RollbackSweeper",
    "RollbackResult",

    # Auto ramp
    "AutoRamp",
    "RampPhase",
    "RampResult",
]
