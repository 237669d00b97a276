import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone

from fastapi import Depends, FastAPI, HTTPException, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from httpx import AsyncBaseTransport, AsyncClient, ConnectError, ReadTimeout
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from .admin import router as admin_router
from .analytics import router as analytics_router
from .audit import AuditRecorder, get_content_length
from .auth import router as auth_router
from .config import (
    API_TARGETS,
    AUDIT_BUFFERED,
    AUDIT_FLUSH_INTERVAL_SECONDS,
    AUDIT_RETENTION_DAYS,
    EXPOSE_ERROR_DETAILS,
    LOG_LEVEL,
    MAINTENANCE_INTERVAL_SECONDS,
    MAX_REQUEST_SIZE,
    RATE_LIMIT_POLICIES,
)
from .database import AsyncSessionLocal, get_db, ping
from .gateway import AuthContext, Gateway, RouteOptions, apply_security_headers, get_gateway
from .logging_worker import AuditBuffer, batch_log_writer, make_redis_client
from .maintenance import maintenance_worker
from .rate_limit import RateLimiter

logging.basicConfig(level=LOG_LEVEL, format='%(asctime)s - %(levelname)s - %(message)s')

PROXY_ROUTE = RouteOptions(require_auth=False, allow_public=True, rate_limit="weather")
HEALTH_ROUTE = RouteOptions(require_auth=False, allow_public=True, rate_limit="background", skip_audit=True)

# hop-by-hop headers from the upstream response, our server generates its own
_STRIPPED_RESPONSE_HEADERS = (
    "content-encoding",
    "content-length",
    "transfer-encoding",
    "connection",
    "x-ratelimit-limit",
    "x-ratelimit-remaining",
    "x-ratelimit-reset",
)


async def _stop(task: asyncio.Task, name: str):
    task.cancel()
    try:
        await task
    except asyncio.CancelledError:
        logging.info(f"{name} task cancelled.")


def create_app(
    session_factory: async_sessionmaker[AsyncSession] = AsyncSessionLocal,
    engine: AsyncEngine | None = None,
    audit_buffered: bool = AUDIT_BUFFERED,
    redis_client=None,
    run_workers: bool = True,
    upstream_transport: AsyncBaseTransport | None = None,
) -> FastAPI:
    rate_limiter = RateLimiter()
    recorder = AuditRecorder(session_factory)
    audit_buffer = None
    if audit_buffered:
        audit_buffer = AuditBuffer(redis_client or make_redis_client(), recorder)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        tasks = []
        if run_workers:
            if audit_buffer is not None:
                tasks.append(("Log writer", asyncio.create_task(
                    batch_log_writer(audit_buffer, AUDIT_FLUSH_INTERVAL_SECONDS)
                )))
            tasks.append(("Maintenance", asyncio.create_task(
                maintenance_worker(
                    session_factory, rate_limiter, recorder,
                    MAINTENANCE_INTERVAL_SECONDS, AUDIT_RETENTION_DAYS,
                )
            )))
        yield
        for name, task in tasks:
            await _stop(task, name)
        if engine is not None:
            await engine.dispose()

    app = FastAPI(lifespan=lifespan)
    app.state.session_factory = session_factory
    app.state.rate_limiter = rate_limiter
    app.state.recorder = recorder
    app.state.audit_buffer = audit_buffer
    app.state.upstream_transport = upstream_transport
    app.state.gateway = Gateway(
        session_factory,
        rate_limiter,
        audit_buffer or recorder,
        policies=RATE_LIMIT_POLICIES,
        expose_error_details=EXPOSE_ERROR_DETAILS,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization", "X-API-Key", "X-Admin-Secret"],
    )

    @app.middleware("http")
    async def security_headers(request: Request, call_next):
        # also covers responses produced outside the gateway, like 404s
        return apply_security_headers(await call_next(request))

    app.include_router(auth_router)
    app.include_router(admin_router)
    app.include_router(analytics_router)

    app.add_api_route("/api/weather", proxy_weather, methods=["GET"])
    app.add_api_route("/api/geocoding", proxy_geocoding, methods=["GET"])
    app.add_api_route("/api/health", health, methods=["GET", "POST"])
    return app


def get_target_url(api_name: str) -> str:
    target_url = API_TARGETS.get(api_name)
    if not target_url:
        raise HTTPException(status_code=400, detail="Invalid API name provided.")
    return target_url


async def forward(request: Request, api_name: str, ctx: AuthContext) -> Response:
    ctx.request_params = dict(request.query_params)

    request_size = get_content_length(request.headers) or 0
    if request_size > MAX_REQUEST_SIZE:
        raise HTTPException(status_code=413, detail="Payload Too Large")

    target_url = get_target_url(api_name)
    params = {name: value for name, value in request.query_params.items() if name != "api_key"}

    async with AsyncClient(transport=request.app.state.upstream_transport, timeout=10.0) as client:
        try:
            response = await client.get(target_url, params=params)
        except (ConnectError, ReadTimeout):
            raise HTTPException(
                status_code=status.HTTP_502_BAD_GATEWAY,
                detail="The upstream API is unavailable."
            )

    response_headers = dict(response.headers)
    for name in _STRIPPED_RESPONSE_HEADERS:
        response_headers.pop(name, None)

    logging.info(f"Proxying request: {request.method} {target_url} - Status: {response.status_code}")
    if response.status_code >= 400:
        ctx.error_message = f"Upstream {api_name} API returned {response.status_code}"

    return Response(
        content=response.content,
        status_code=response.status_code,
        headers=response_headers
    )


async def proxy_weather(request: Request, gateway: Gateway = Depends(get_gateway)):
    async def handler(ctx: AuthContext):
        return await forward(request, "weather", ctx)

    return await gateway.handle(request, handler, PROXY_ROUTE)


async def proxy_geocoding(request: Request, gateway: Gateway = Depends(get_gateway)):
    async def handler(ctx: AuthContext):
        return await forward(request, "geocoding", ctx)

    return await gateway.handle(request, handler, PROXY_ROUTE)


async def health(
    request: Request,
    gateway: Gateway = Depends(get_gateway),
    db: AsyncSession = Depends(get_db),
):
    async def handler(ctx: AuthContext):
        timestamp = datetime.now(timezone.utc).isoformat()
        try:
            await ping(db)
        except SQLAlchemyError as e:
            logging.error(f"Health check failed: {e}")
            return JSONResponse(
                {"status": "error", "message": "Database connection failed", "timestamp": timestamp},
                status_code=500,
            )
        return {"status": "healthy", "message": "Database connection successful", "timestamp": timestamp}

    return await gateway.handle(request, handler, HEALTH_ROUTE)


app = create_app()
