"""FastAPI backend exposing the failure-mode catalogue.

The service is built once at startup, stored on ``app.state`` and shared
across requests. Errors are mapped to short, user-safe HTTP responses; backend
codes and details only reach the logs.
"""

import logging
import time
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from typing import Annotated, TypeVar

from fastapi import FastAPI, HTTPException, Query, Request, Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from pydantic import BaseModel

from src.config import get_settings
from src.failure_modes.models import (
    MAX_PAGE_SIZE,
    FailureMode,
    FailureModeSearchParams,
    FailureModeStats,
    NewFailureMode,
    OfflineInfo,
)
from src.failure_modes.service import FailureModeService, build_service
from src.observability.metrics import APP_INFO, REQUEST_DURATION, REQUESTS_TOTAL
from src.resilience.errors import (
    FailureModeError,
    RateLimitExceeded,
    RemoteError,
    SearchUnavailable,
    TransientRemoteError,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")


# ---------------------------------------------------------------------------
# Pydantic models
# ---------------------------------------------------------------------------


class HealthResponse(BaseModel):
    """Response body for GET /health."""

    status: str
    online: bool
    offline_mode: bool
    offline_storage_supported: bool


# ---------------------------------------------------------------------------
# Application lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Build the service once at startup, tear down on shutdown."""
    settings = get_settings()
    APP_INFO.info({"version": "0.1.0", "table": settings.failure_modes_table})

    service = build_service(settings)
    app.state.service = service
    service.connectivity.start_probing(settings.connectivity_probe_interval_seconds)
    await service.preload_failure_modes()
    logger.info("Failure mode service ready")

    yield

    await service.close()
    logger.info("Shutting down failure mode service")


app = FastAPI(title="AMFE Failure Mode Library", lifespan=lifespan)


def _service(request: Request) -> FailureModeService:
    service: FailureModeService = request.app.state.service
    return service


async def _instrumented(endpoint: str, call: Callable[[], Awaitable[T]]) -> T:
    """Run ``call`` recording request metrics; map layer errors to HTTP errors."""
    start = time.monotonic()
    try:
        result = await call()
    except RateLimitExceeded as exc:
        REQUESTS_TOTAL.labels(endpoint=endpoint, status="rate_limited").inc()
        raise HTTPException(
            status_code=429,
            detail={"message": str(exc), "remaining": exc.remaining, "reset_time": exc.reset_time},
        ) from exc
    except (SearchUnavailable, TransientRemoteError) as exc:
        REQUESTS_TOTAL.labels(endpoint=endpoint, status="unavailable").inc()
        raise HTTPException(status_code=503, detail=str(exc)) from exc
    except RemoteError as exc:
        REQUESTS_TOTAL.labels(endpoint=endpoint, status="error").inc()
        logger.error("%s failed: status=%s code=%s detail=%s", endpoint, exc.status, exc.code, exc.detail)
        raise HTTPException(status_code=502, detail=str(exc)) from exc
    except FailureModeError as exc:
        REQUESTS_TOTAL.labels(endpoint=endpoint, status="error").inc()
        logger.exception("%s failed", endpoint)
        raise HTTPException(status_code=500, detail=str(exc)) from exc
    finally:
        REQUEST_DURATION.labels(endpoint=endpoint).observe(time.monotonic() - start)

    REQUESTS_TOTAL.labels(endpoint=endpoint, status="success").inc()
    return result


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------


@app.get("/metrics")
async def metrics() -> Response:
    """Expose Prometheus metrics in exposition format."""
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)


@app.get("/health", response_model=HealthResponse)
async def health(request: Request) -> HealthResponse:
    """Report backend reachability and offline readiness."""
    service = _service(request)
    online = await service.connectivity.probe()
    return HealthResponse(
        status="healthy" if online else "degraded",
        online=online,
        offline_mode=service.is_offline_mode(),
        offline_storage_supported=service.offline_store.is_supported(),
    )


@app.get("/failure-modes")
async def search_failure_modes(
    request: Request,
    search: str | None = None,
    category: str | None = None,
    limit: Annotated[int | None, Query(ge=1, le=MAX_PAGE_SIZE)] = None,
    offset: Annotated[int | None, Query(ge=0)] = None,
) -> list[FailureMode]:
    service = _service(request)
    params = FailureModeSearchParams(search=search, category=category, limit=limit, offset=offset)
    return await _instrumented("/failure-modes", lambda: service.search_failure_modes(params))


@app.get("/failure-modes/suggestions")
async def failure_mode_suggestions(
    request: Request,
    q: str = "",
    limit: Annotated[int, Query(ge=1, le=MAX_PAGE_SIZE)] = 10,
) -> list[FailureMode]:
    service = _service(request)
    return await _instrumented(
        "/failure-modes/suggestions", lambda: service.get_failure_mode_suggestions(q, limit)
    )


@app.get("/failure-modes/categories")
async def failure_mode_categories(request: Request) -> list[str]:
    service = _service(request)
    return await _instrumented("/failure-modes/categories", service.get_failure_mode_categories)


@app.get("/failure-modes/by-category/{category}")
async def failure_modes_by_category(request: Request, category: str) -> list[FailureMode]:
    service = _service(request)
    return await _instrumented(
        "/failure-modes/by-category", lambda: service.get_failure_modes_by_category(category)
    )


@app.get("/failure-modes/by-tags")
async def failure_modes_by_tags(
    request: Request,
    tag: Annotated[list[str] | None, Query()] = None,
) -> list[FailureMode]:
    service = _service(request)
    return await _instrumented("/failure-modes/by-tags", lambda: service.get_failure_modes_by_tags(tag or []))


@app.get("/failure-modes/stats", response_model=FailureModeStats)
async def failure_mode_stats(request: Request) -> FailureModeStats:
    service = _service(request)
    return await _instrumented("/failure-modes/stats", service.get_failure_mode_stats)


@app.post("/failure-modes/cache/invalidate", status_code=204)
async def invalidate_cache(request: Request) -> Response:
    _service(request).invalidate_cache()
    return Response(status_code=204)


@app.get("/failure-modes/{failure_mode_id}")
async def get_failure_mode(request: Request, failure_mode_id: str) -> FailureMode:
    service = _service(request)
    record = await _instrumented("/failure-modes/{id}", lambda: service.get_failure_mode_by_id(failure_mode_id))
    if record is None:
        raise HTTPException(status_code=404, detail="Failure mode not found")
    return record


@app.post("/failure-modes", status_code=201)
async def add_failure_mode(request: Request, body: NewFailureMode) -> FailureMode:
    service = _service(request)
    return await _instrumented("/failure-modes:add", lambda: service.add_custom_failure_mode(body))


@app.get("/offline", response_model=OfflineInfo)
async def offline_info(request: Request) -> OfflineInfo:
    return await _service(request).get_offline_info()

