"""
middleware.py - Request tracking and canary routing middleware
"""
from fastapi import Request
from starlette.concurrency import run_in_threadpool
from starlette.middleware.base import BaseHTTPMiddleware
import uuid
import time
from typing import Optional, Tuple
from logger import get_logger
from config import settings
from deployment import (
    IdentitySource,
    RoutingRequest,
    TrafficRouter,
    mint_client_cookie,
    resolve_client_id
)

logger = get_logger(__name__)


class RequestIDMiddleware(BaseHTTPMiddleware):
    """Add unique request ID to each request"""

    async def dispatch(self, request: Request, call_next):
        request_id = request.headers.get("X-Request-ID", str(uuid.uuid4()))
        request.state.request_id = request_id

        start_time = time.time()
        response = await call_next(request)
        process_time = time.time() - start_time

        response.headers["X-Request-ID"] = request_id
        response.headers["X-Process-Time"] = str(process_time)

        served = getattr(request.state, "canary_version", None)
        logger.info(
            f"Request {request_id}: {request.method} {request.url.path} "
            f"- {response.status_code} - {process_time:.3f}s"
            + (f" - served {served}" if served else "")
        )

        return response


class CanaryRoutingMiddleware(BaseHTTPMiddleware):
    """
    Route every request to a release version

    Resolves the client id, asks the TrafficRouter for a decision, exposes it
    on ``request.state.canary_decision`` / ``request.state.canary_version``,
    tags the response with the served version and sets the sticky cookie
    when a new binding was made. Anonymous clients without a client id
    cookie are minted one.
    """

    def __init__(self, app, router: TrafficRouter, exclude_paths: Optional[list] = None):
        super().__init__(app)
        self.router = router
        self.exclude_paths = exclude_paths or ["/health", "/metrics"]

    def _excluded(self, path: str) -> bool:
        return any(path == p or path.startswith(p.rstrip("/") + "/") for p in self.exclude_paths)

    def _identity(self, request: Request) -> Tuple[IdentitySource, Optional[str]]:
        """Identity material for the request, plus a client id cookie to mint if any"""
        user_id = getattr(request.state, "user_id", None) or request.headers.get(settings.user_id_header)
        cookie_value = request.cookies.get(settings.client_id_cookie_name)
        ip_address = request.client.host if request.client else None
        user_agent = request.headers.get("User-Agent")

        minted = None
        if not (user_id or "").strip() and not (cookie_value or "").strip():
            minted = cookie_value = mint_client_cookie(ip_address, user_agent)

        source = IdentitySource(
            user_id=user_id,
            cookie_value=cookie_value,
            ip_address=ip_address,
            user_agent=user_agent,
        )
        return source, minted

    async def dispatch(self, request: Request, call_next):
        if self._excluded(request.url.path):
            return await call_next(request)

        override = request.headers.get(settings.override_header) or None
        source, minted = self._identity(request)

        # Redis-backed stores block, keep them off the event loop
        result = await run_in_threadpool(
            self.router.route,
            RoutingRequest(client_id=resolve_client_id(source), override=override)
        )
        version = result.decision.chosen_version

        request.state.canary_decision = result.decision
        request.state.canary_version = version

        response = await call_next(request)

        secure = settings.environment == "production"
        response.headers[settings.version_header] = version
        if result.cookie is not None:
            response.set_cookie(
                key=result.cookie.name,
                value=result.cookie.value,
                max_age=result.cookie.max_age,
                httponly=True,
                samesite="lax",
                secure=secure,
            )
        if minted is not None:
            response.set_cookie(
                key=settings.client_id_cookie_name,
                value=minted,
                max_age=settings.client_id_cookie_max_age,
                httponly=True,
                samesite="lax",
                secure=secure,
            )

        return response
