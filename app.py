"""
app.py - Canary router service: routing middleware plus operator control plane
"""
from fastapi import FastAPI, APIRouter, HTTPException, Request, Depends, status, Response
from fastapi.responses import JSONResponse
from starlette.concurrency import run_in_threadpool
from pydantic import BaseModel, Field
from typing import Optional, List, Dict, Any
from datetime import datetime
from contextlib import asynccontextmanager
import asyncio

from prometheus_client import CONTENT_TYPE_LATEST

from config import settings
from security import APIKeyAuth
from logger import get_logger
from middleware import RequestIDMiddleware, CanaryRoutingMiddleware
from metrics import get_metrics
from deployment import (
    AssignmentStore,
    InMemoryAssignmentStore,
    InvalidInput,
    InvalidState,
    InvalidTransition,
    RolloutController,
    RolloutState,
    RollbackSweeper,
    TrafficRouter,
    create_assignment_store
)

logger = get_logger(__name__)


# Request/Response Models
class StartRolloutRequest(BaseModel):
    candidate: str = Field(..., min_length=1, max_length=128)
    baseline: str = Field(..., min_length=1, max_length=128)
    initial_percentage: int = Field(default=0, ge=0, le=100)


class PercentageRequest(BaseModel):
    percentage: int = Field(..., ge=0, le=100)


class RollbackRequest(BaseModel):
    reason: str = Field(default="", max_length=500)


class RolloutStatusResponse(BaseModel):
    rollout_id: Optional[str] = None
    candidate_version: Optional[str] = None
    baseline_version: str
    target_percentage: int
    status: str
    started_at: Optional[str] = None
    updated_at: str
    reason: str = ""


class RouteResponse(BaseModel):
    version: str
    reason: Optional[str] = None
    request_id: Optional[str] = None


class HealthResponse(BaseModel):
    status: str
    version: str
    timestamp: str
    environment: str
    services: Dict[str, str]


def to_status_response(state: RolloutState) -> RolloutStatusResponse:
    return RolloutStatusResponse(**state.to_dict())


def create_error_response(status_code: int, detail: str, request_id: str = None) -> JSONResponse:
    """Create standardized error response"""
    content = {"detail": detail}
    if request_id:
        content["request_id"] = request_id

    return JSONResponse(status_code=status_code, content=content)


async def run_assignment_cleanup(store: InMemoryAssignmentStore):
    """Periodically drop expired sticky assignments from the memory store"""
    while True:
        await asyncio.sleep(max(60, store.ttl_seconds // 4))
        try:
            store.clear_expired()
        except Exception as e:
            logger.error(f"Assignment cleanup failed: {e}")


def create_app(
    controller: Optional[RolloutController] = None,
    store: Optional[AssignmentStore] = None,
    api_key: Optional[str] = None,
    background_sweeps: bool = True
) -> FastAPI:
    """
    Build the router service

    Args:
        controller: Rollout controller (default: one built from settings)
        store: Assignment store (default: Redis when redis_url is set, else memory)
        api_key: Bearer key for control-plane calls (default: settings)
        background_sweeps: Run rollback purges on a worker thread
    """
    if controller is None:
        controller = RolloutController()
    if store is None:
        store = create_assignment_store()

    sweeper = RollbackSweeper(store, background=background_sweeps)
    sweeper.attach(controller)
    traffic_router = TrafficRouter(controller, store)

    if api_key is None and settings.require_auth:
        api_key = settings.api_key
    auth = APIKeyAuth(api_key) if api_key else None

    async def verify_operator(request: Request):
        if auth is not None:
            await auth(request)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        background = []
        if isinstance(store, InMemoryAssignmentStore):
            background.append(asyncio.create_task(run_assignment_cleanup(store)))

        logger.info(
            f"{settings.app_name} v{settings.version} started in {settings.environment} mode "
            f"(store={store.get_stats().get('backend')}, rollout={controller.status().status.value})"
        )

        yield

        logger.info("Application shutting down gracefully...")
        for task in background:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

        sweeper.shutdown()
        store.close()
        logger.info("Shutdown complete")

    app = FastAPI(
        title=settings.app_name,
        version=settings.version,
        lifespan=lifespan,
        docs_url="/api/docs" if settings.debug else None,
        redoc_url="/api/redoc" if settings.debug else None,
        openapi_url="/openapi.json" if settings.debug else None
    )
    app.state.controller = controller
    app.state.store = store
    app.state.sweeper = sweeper
    app.state.router = traffic_router

    # RequestIDMiddleware is added last, so it wraps routing and can log the served version
    app.add_middleware(
        CanaryRoutingMiddleware,
        router=traffic_router,
        exclude_paths=["/health", "/metrics", "/rollouts"]
    )
    app.add_middleware(RequestIDMiddleware)

    control_plane = APIRouter(
        prefix="/rollouts",
        tags=["Control Plane"],
        dependencies=[Depends(verify_operator)]
    )

    @control_plane.post("", response_model=RolloutStatusResponse, status_code=status.HTTP_201_CREATED)
    async def start_rollout(body: StartRolloutRequest):
        """Begin a canary rollout"""
        state = controller.start_rollout(body.candidate, body.baseline, body.initial_percentage)
        return to_status_response(state)

    @control_plane.put("/percentage", response_model=RolloutStatusResponse)
    async def set_percentage(body: PercentageRequest):
        """Move the candidate's traffic share (100 promotes, 0 pauses)"""
        return to_status_response(controller.set_percentage(body.percentage))

    @control_plane.post("/advance", response_model=RolloutStatusResponse)
    async def advance():
        """Step to the next canary stage"""
        return to_status_response(controller.advance())

    @control_plane.post("/promote", response_model=RolloutStatusResponse)
    async def promote():
        return to_status_response(controller.promote())

    @control_plane.post("/rollback", response_model=RolloutStatusResponse)
    async def rollback(body: Optional[RollbackRequest] = None):
        """Abort the rollout and purge candidate stickiness"""
        reason = body.reason if body else ""
        return to_status_response(controller.rollback(reason=reason))

    @control_plane.get("/status", response_model=RolloutStatusResponse)
    async def rollout_status():
        return to_status_response(controller.status())

    @control_plane.get("/history", response_model=List[RolloutStatusResponse])
    async def rollout_history(limit: int = 20):
        if limit < 1 or limit > 100:
            raise HTTPException(status_code=400, detail="limit must be within [1, 100]")
        history = controller.history()[-limit:]
        return [to_status_response(state) for state in reversed(history)]

    @control_plane.get("/rollbacks")
    async def rollback_report() -> Dict[str, Any]:
        return {
            "stats": sweeper.get_rollback_stats(),
            "history": [
                {
                    "rollout_id": r.rollout_id,
                    "candidate_version": r.candidate_version,
                    "reason": r.reason,
                    "started_at": r.started_at.isoformat(),
                    "completed_at": r.completed_at.isoformat() if r.completed_at else None,
                    "success": r.success,
                    "evicted": r.evicted,
                    "error": r.error,
                }
                for r in sweeper.get_rollback_history()
            ],
        }

    app.include_router(control_plane)

    @app.get("/route", response_model=RouteResponse, tags=["Routing"])
    async def route(request: Request):
        """Report the version the routing middleware chose for this request"""
        decision = getattr(request.state, "canary_decision", None)
        return RouteResponse(
            version=request.state.canary_version,
            reason=decision.reason.value if decision else None,
            request_id=getattr(request.state, "request_id", None),
        )

    @app.get("/health", response_model=HealthResponse, tags=["System"])
    async def health_check():
        services = {
            # Redis ping blocks, keep it off the event loop
            "assignment_store": "healthy" if await run_in_threadpool(store.check_health) else "unavailable",
            "rollout": controller.status().status.value,
        }

        # Routing keeps working without the store, only stickiness is lost
        overall_status = "degraded" if services["assignment_store"] != "healthy" else "healthy"

        return HealthResponse(
            status=overall_status,
            version=settings.version,
            environment=settings.environment,
            timestamp=datetime.utcnow().isoformat(),
            services=services
        )

    @app.get("/metrics", tags=["System"])
    async def metrics():
        """Prometheus metrics endpoint"""
        if not settings.enable_metrics:
            raise HTTPException(status_code=404)

        return Response(content=get_metrics(), media_type=CONTENT_TYPE_LATEST)

    @app.exception_handler(InvalidInput)
    async def invalid_input_handler(request: Request, exc: InvalidInput):
        request_id = getattr(request.state, "request_id", None)
        logger.warning(f"Rejected control-plane input in request {request_id}: {exc}")
        return create_error_response(status.HTTP_400_BAD_REQUEST, str(exc), request_id)

    @app.exception_handler(InvalidTransition)
    async def invalid_transition_handler(request: Request, exc: InvalidTransition):
        request_id = getattr(request.state, "request_id", None)
        logger.warning(f"Rejected rollout transition in request {request_id}: {exc}")
        return create_error_response(status.HTTP_409_CONFLICT, str(exc), request_id)

    @app.exception_handler(InvalidState)
    async def invalid_state_handler(request: Request, exc: InvalidState):
        request_id = getattr(request.state, "request_id", None)
        logger.warning(f"Rejected rollout start in request {request_id}: {exc}")
        return create_error_response(status.HTTP_409_CONFLICT, str(exc), request_id)

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    log_config = {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "default": {
                "format": "%(asctime)s - %(name)s - %(levelname)s - %(message)s",
            },
        },
        "handlers": {
            "default": {
                "formatter": "default",
                "class": "logging.StreamHandler",
            },
        },
        "root": {
            "level": settings.log_level,
            "handlers": ["default"],
        },
    }

    # Rollout state lives in-process, so a single worker owns it
    uvicorn.run(
        "app:app",
        host=settings.host,
        port=settings.port,
        workers=1,
        log_config=log_config,
        reload=(settings.environment == "development"),
    )
