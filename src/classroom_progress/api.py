"""
HTTP surface of the progress core.

- ``POST /calculate-class-averages`` (also under ``/functions/``) runs the
  aggregator and answers with the updated averages. CORS is open to any
  origin and ``OPTIONS`` answers the preflight with ``204``.
- ``GET /classes/{class_id}/averages`` and ``GET /classes/{class_id}/progress``
  are read-through views on the region cache that the change feed keeps fresh.
- ``GET /health`` reports database and change feed status.

The lifespan owns every long-lived object: pool, region cache, broker and the
change feed listener are created at startup and torn down at shutdown.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import AbstractSet, Optional

from fastapi import APIRouter, Body, FastAPI, Request, Response
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException
from pydantic import BaseModel

from aggregation import AggregationSetupError, AggregatorConfig, ClassAverageAggregator
from database import (
    CLASS_AVERAGES_REGION,
    PROGRESS_REGION,
    DatabasePool,
    ProgressQueries,
    RegionCache,
    close_database_pool,
    get_database_pool,
)
from models.permissions import AccessDecision, AccessReason, Role, authorize, parse_role, redirect_target
from realtime import CacheInvalidationBroker, ChangeFeedListener, PostgresNotifyTransport, Topic
from utils.retry import RetryPolicy
from .config import Settings, get_settings


logger = logging.getLogger(__name__)

CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Headers": "authorization, x-client-info, apikey, content-type, x-user-role",
    "Access-Control-Allow-Methods": "POST, OPTIONS",
}

ROLE_HEADER = "X-User-Role"
TRIGGER_ROLES: AbstractSet[Role] = frozenset({Role.TEACHER, Role.HEADTEACHER})
AVERAGES_ROLES: AbstractSet[Role] = frozenset({Role.STUDENT, Role.TEACHER, Role.HEADTEACHER})
PROGRESS_ROLES: AbstractSet[Role] = frozenset({Role.TEACHER, Role.HEADTEACHER})


class TriggerRequest(BaseModel):
    """Optional body of the aggregation trigger."""
    school_id: Optional[str] = None


@dataclass
class ProgressServices:
    """Long-lived collaborators shared by the request handlers."""
    store: ProgressQueries
    aggregator: ClassAverageAggregator
    cache: RegionCache
    broker: CacheInvalidationBroker
    listener: Optional[ChangeFeedListener] = None
    pool: Optional[DatabasePool] = None
    enforce_roles: bool = False
    # One aggregation run in flight at a time; concurrent upserts on a pair would race.
    run_lock: asyncio.Lock = field(default_factory=asyncio.Lock)

    async def resynchronize(self) -> None:
        """Drop every cached region after a feed gap so readers refetch."""
        for region in (PROGRESS_REGION, CLASS_AVERAGES_REGION):
            await self.broker.invalidate(region)

    async def close(self) -> None:
        if self.listener is not None:
            await self.listener.stop()
        await self.cache.close()


async def build_services(settings: Settings) -> ProgressServices:
    """Create the pool, cache, broker and a started change feed listener."""
    pool = await get_database_pool()
    store = ProgressQueries(pool)

    aggregation = settings.aggregation
    aggregator = ClassAverageAggregator(
        store,
        AggregatorConfig(
            max_concurrent_pairs=aggregation.max_concurrent_pairs,
            store_timeout=aggregation.store_timeout,
            max_retries=aggregation.max_retries,
            retry_delay=aggregation.retry_delay,
        ),
    )

    cache = RegionCache()
    broker = CacheInvalidationBroker(cache)
    services = ProgressServices(
        store=store,
        aggregator=aggregator,
        cache=cache,
        broker=broker,
        pool=pool,
        enforce_roles=settings.app.enforce_roles,
    )

    feed = settings.feed
    listener = ChangeFeedListener(
        PostgresNotifyTransport(pool.config.dsn, connect_timeout=feed.connect_timeout),
        broker,
        retry_policy=RetryPolicy(
            max_retries=feed.max_reconnect_attempts,
            retry_delay=feed.reconnect_delay,
            max_delay=feed.max_reconnect_delay,
            timeout=feed.connect_timeout,
        ),
        on_degraded=lambda cause: logger.error(f"Change feed degraded, serving cached data only: {cause}"),
        on_reconnect=services.resynchronize,
    )
    listener.subscribe(Topic.PROGRESS_ENTRIES, class_id=feed.class_id)
    listener.subscribe(Topic.CLASS_AVERAGES, class_id=feed.class_id)
    listener.start()
    services.listener = listener

    return services


def get_services(request: Request) -> ProgressServices:
    return request.app.state.services


def check_access(request: Request, allowed_roles: AbstractSet[Role]) -> Optional[JSONResponse]:
    """
    Run the access gate for a request when role enforcement is on.

    Returns None when the request may proceed, otherwise the denial response
    carrying the reason and where the caller should be redirected. A role
    header that names no known role is refused as a wrong role and sent back
    to sign-in, never treated as an anonymous caller.
    """
    if not get_services(request).enforce_roles:
        return None

    try:
        role = parse_role(request.headers.get(ROLE_HEADER))
        decision = authorize(role, allowed_roles)
    except ValueError as e:
        logger.warning(f"Refusing request to {request.url.path}: {e}")
        role = None
        decision = AccessDecision(allowed=False, reason=AccessReason.WRONG_ROLE)

    if decision:
        return None

    status_code = 401 if decision.reason == AccessReason.UNAUTHENTICATED else 403
    return JSONResponse(
        status_code=status_code,
        content={
            "error": "Sign in required" if status_code == 401 else "Not permitted for this role",
            "reason": decision.reason.value,
            "redirect": redirect_target(decision, role),
        },
        headers=CORS_HEADERS,
    )


router = APIRouter()


@router.options("/calculate-class-averages", include_in_schema=False)
@router.options("/functions/calculate-class-averages", include_in_schema=False)
async def calculate_class_averages_preflight() -> Response:
    return Response(status_code=204, headers=CORS_HEADERS)


@router.post("/calculate-class-averages")
@router.post("/functions/calculate-class-averages")
async def calculate_class_averages(request: Request, body: Optional[TriggerRequest] = Body(None)):
    """Recompute every class average and report the rows written."""
    denied = check_access(request, TRIGGER_ROLES)
    if denied is not None:
        return denied

    services = get_services(request)
    school_id = body.school_id if body else None

    try:
        async with services.run_lock:
            result = await services.aggregator.recompute(school_id)
    except AggregationSetupError as e:
        return JSONResponse(status_code=500, content={"error": str(e)}, headers=CORS_HEADERS)
    except Exception as e:
        logger.error(f"Error in calculate-class-averages: {e}", exc_info=True)
        return JSONResponse(
            status_code=500,
            content={"error": "Failed to calculate class averages"},
            headers=CORS_HEADERS,
        )

    return JSONResponse(
        status_code=200,
        content={
            "success": True,
            "message": result.message,
            "results": [average.to_response() for average in result.results],
            "failures": [
                {"class_id": failure.class_id, "subject_id": failure.subject_id}
                for failure in result.failures
            ],
        },
        headers=CORS_HEADERS,
    )


@router.get("/classes/{class_id}/averages")
async def class_averages(class_id: str, request: Request):
    """Current averages of one class, served from the classAverages region."""
    denied = check_access(request, AVERAGES_ROLES)
    if denied is not None:
        return denied

    services = get_services(request)

    async def load():
        averages = await services.store.get_class_averages(class_id)
        return [average.model_dump(mode="json") for average in averages]

    return await services.cache.get_or_load(CLASS_AVERAGES_REGION, class_id, load)


@router.get("/classes/{class_id}/progress")
async def class_progress(class_id: str, request: Request, subject_id: Optional[str] = None):
    """Progress entries of one class, served from the progress region."""
    denied = check_access(request, PROGRESS_ROLES)
    if denied is not None:
        return denied

    services = get_services(request)
    cache_key = f"{class_id}/{subject_id or '*'}"

    async def load():
        entries = await services.store.fetch_entries(class_id, subject_id)
        return [entry.model_dump(mode="json") for entry in entries]

    return await services.cache.get_or_load(PROGRESS_REGION, cache_key, load)


@router.get("/health")
async def health(request: Request):
    services = get_services(request)

    feed_status = "stopped"
    if services.listener is not None:
        if services.listener.degraded:
            feed_status = "degraded"
        elif services.listener.connected:
            feed_status = "connected"
        elif services.listener.is_running:
            feed_status = "connecting"

    database_ok = await services.pool.health_check() if services.pool is not None else None
    return {"status": "ok", "database": database_ok, "change_feed": feed_status}


def add_error_handlers(app: FastAPI) -> None:
    """Answer framework-raised errors (404, 405, 422) as JSON with the CORS headers."""

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(request: Request, exc: StarletteHTTPException):
        headers = {**CORS_HEADERS, **(exc.headers or {})}
        return JSONResponse(status_code=exc.status_code, content={"error": exc.detail}, headers=headers)

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        logger.info(f"Rejected request to {request.url.path}: {exc.errors()}")
        return JSONResponse(
            status_code=422,
            content={"error": "Invalid request", "detail": jsonable_encoder(exc.errors())},
            headers=CORS_HEADERS,
        )


def create_app(services: Optional[ProgressServices] = None) -> FastAPI:
    """
    Build the FastAPI application.

    With ``services`` given, the app uses them as-is and leaves their lifetime
    to the caller; otherwise the lifespan builds and tears them down.
    """
    settings = get_settings() if services is None else None

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if services is not None:
            app.state.services = services
            yield
            return

        app.state.services = await build_services(settings)
        try:
            yield
        finally:
            await app.state.services.close()
            await close_database_pool()

    app = FastAPI(
        title="Classroom Progress Core",
        description="Class average aggregation and change propagation",
        version=settings.app.version if settings else "0.1.0",
        lifespan=lifespan,
    )
    if services is not None:
        app.state.services = services
    add_error_handlers(app)
    app.include_router(router)
    return app
