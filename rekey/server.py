"""
Rekey HTTP service.

FastAPI application exposing the key-rotation protocol:

    POST /rotation/start      - open a rotation (per-owner rate limited)
    POST /rotation/complete   - commit a pending rotation
    GET  /rotation/status     - read one of the caller's rotations (?rotationId=)
    POST /rotation/rollback   - undo a completed rotation inside the window
    GET  /health              - liveness
    GET  /metrics             - Prometheus metrics

Every rotation route requires ``Authorization: Bearer <token>`` and passes a
general per-address throttle before any rotation logic runs. Status reads get
a larger allowance than the mutating routes.

Usage:
    rekey serve --port 8787
"""

import asyncio
import json
import logging
from typing import List, Optional

from fastapi import FastAPI, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from prometheus_client import CONTENT_TYPE_LATEST

from rekey import __version__, config
from rekey.auth import BearerAuthenticator
from rekey.config import RotationSettings
from rekey.errors import NotFoundError, RateLimitedError, RotationError, ValidationError
from rekey.identity import MemoryIdentityStore, RedisIdentityStore
from rekey.ledger import MemoryRotationLedger, RedisRotationLedger
from rekey.metrics import RotationMetrics
from rekey.mutator import MemoryIdentityMutator, RedisIdentityMutator
from rekey.ratelimit import MemoryRateLimiter, RateLimiterInterface, RedisRateLimiter
from rekey.rotation import KeyRotationService, RotationAction

logger = logging.getLogger(__name__)


def client_address(request: Request) -> str:
    """First hop of X-Forwarded-For, then X-Real-IP, then the socket peer."""
    forwarded = request.headers.get("x-forwarded-for", "")
    first = forwarded.split(",")[0].strip()
    if first:
        return first
    real_ip = request.headers.get("x-real-ip", "").strip()
    if real_ip:
        return real_ip
    return request.client.host if request.client else "unknown"


async def read_payload(request: Request) -> Optional[dict]:
    """Parse a JSON body; an empty body means no payload."""
    body = await request.body()
    if not body.strip():
        return None
    try:
        return json.loads(body)
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise ValidationError("Invalid JSON body") from e


def build_memory_service(
    settings: Optional[RotationSettings] = None, metrics: Optional[RotationMetrics] = None
) -> KeyRotationService:
    """Service over in-memory backends sharing one lock."""
    lock = asyncio.Lock()
    identities = MemoryIdentityStore(lock=lock)
    ledger = MemoryRotationLedger(lock=lock)
    return KeyRotationService(
        identities,
        ledger,
        MemoryIdentityMutator(identities, ledger),
        settings=settings,
        metrics=metrics,
    )


def build_redis_service(
    redis_client,
    settings: Optional[RotationSettings] = None,
    metrics: Optional[RotationMetrics] = None,
) -> KeyRotationService:
    """Service over Redis backends."""
    identities = RedisIdentityStore(redis_client)
    ledger = RedisRotationLedger(redis_client)
    return KeyRotationService(
        identities,
        ledger,
        RedisIdentityMutator(redis_client, identities, ledger),
        settings=settings,
        metrics=metrics,
    )


def create_app(
    service: Optional[KeyRotationService] = None,
    authenticator: Optional[BearerAuthenticator] = None,
    throttle: Optional[RateLimiterInterface] = None,
    metrics: Optional[RotationMetrics] = None,
    mutating_throttle_requests: int = config.THROTTLE_MUTATING_REQUESTS,
    status_throttle_requests: int = config.THROTTLE_STATUS_REQUESTS,
    throttle_window_seconds: int = config.THROTTLE_WINDOW_SECONDS,
    allowed_origins: Optional[List[str]] = None,
) -> FastAPI:
    """
    Build the HTTP application.

    With no arguments, backends are chosen from the environment: Redis when
    ``REKEY_REDIS_URL`` is set, memory otherwise.
    """
    metrics = metrics or RotationMetrics()
    redis_client = None
    if service is None or throttle is None:
        if config.REDIS_URL:
            import redis.asyncio as redis

            redis_client = redis.Redis.from_url(config.REDIS_URL)
    if service is None:
        if redis_client is not None:
            service = build_redis_service(redis_client, metrics=metrics)
        else:
            service = build_memory_service(metrics=metrics)
    if throttle is None:
        throttle = RedisRateLimiter(redis_client) if redis_client is not None else MemoryRateLimiter()
    authenticator = authenticator or BearerAuthenticator(config.TRUSTED_ISSUERS)

    app = FastAPI(title="Rekey", version=__version__)
    if allowed_origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=allowed_origins,
            allow_credentials=True,
            allow_methods=["GET", "POST", "OPTIONS"],
            allow_headers=["Content-Type", "Authorization", "X-Requested-With"],
        )

    @app.exception_handler(RotationError)
    async def rotation_error_handler(request: Request, exc: RotationError) -> JSONResponse:
        headers = {}
        if isinstance(exc, RateLimitedError):
            headers["Retry-After"] = str(int(exc.retry_after + 0.999))
        if exc.status_code >= 500:
            logger.error(f"{request.url.path} failed: {exc.code}")
        else:
            logger.warning(f"{request.url.path} rejected: {exc.code}")
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict(), headers=headers)

    @app.exception_handler(Exception)
    async def unexpected_error_handler(request: Request, exc: Exception) -> JSONResponse:
        logger.exception(f"Unhandled error on {request.url.path}")
        return JSONResponse(
            status_code=500,
            content={"success": False, "error": "Server error", "code": "internal_error"},
        )

    async def run(action: RotationAction, request: Request, payload: Optional[dict]) -> dict:
        address = client_address(request)
        if action is RotationAction.STATUS:
            limit = status_throttle_requests
        else:
            limit = mutating_throttle_requests
        verdict = await throttle.check_limit(
            f"{action.value}:{address}", limit, throttle_window_seconds
        )
        if not verdict.allowed:
            metrics.record_outcome(action.value, "throttled")
            raise RateLimitedError("Too many attempts", "throttled", verdict.retry_after or 0.0)

        owner_id = authenticator.authenticate(request.headers.get("authorization"))
        return await service.dispatch(action, owner_id, payload)

    @app.get("/health")
    async def health() -> dict:
        return {"status": "ok", "version": __version__}

    @app.get("/metrics")
    async def prometheus_metrics() -> Response:
        return Response(content=metrics.get_prometheus_metrics(), media_type=CONTENT_TYPE_LATEST)

    @app.get("/rotation/status")
    async def rotation_status(
        request: Request, rotation_id: str = Query("", alias="rotationId")
    ) -> dict:
        return await run(RotationAction.STATUS, request, {"rotationId": rotation_id})

    @app.post("/rotation/{action}")
    async def rotation_action(action: str, request: Request) -> dict:
        try:
            parsed = RotationAction(action.lower())
        except ValueError:
            raise NotFoundError("Route not found", "route_not_found") from None
        return await run(parsed, request, await read_payload(request))

    return app


def main(host: str = config.HOST, port: int = config.PORT) -> None:
    """Run the service with uvicorn."""
    import uvicorn

    logger.info(f"Starting Rekey on {host}:{port}")
    uvicorn.run(create_app(), host=host, port=port)
