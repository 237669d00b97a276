"""Request pipeline wrapped around every API route.

credential -> key validation -> rate limit -> handler -> audit -> headers

The gateway is the only place that turns governance outcomes into HTTP
status codes. Every response it returns, including rejections, carries the
security headers, and every outcome is audited unless the route opts out.
"""

import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

from fastapi import HTTPException, Request, Response
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ValidationError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from .audit import AuditEvent, get_client_ip, get_content_length, get_user_agent
from .config import EXPOSE_ERROR_DETAILS, RATE_LIMIT_POLICIES, RateLimitPolicy
from .errors import (
    CredentialRequired,
    GatewayError,
    HandlerError,
    InvalidCredential,
    PersistenceError,
    RateLimitExceeded,
)
from .rate_limit import RateLimiter, RateLimitResult
from .security import should_bypass_rate_limit, validate_api_key

SECURITY_HEADERS = {
    "X-Content-Type-Options": "nosniff",
    "X-Frame-Options": "DENY",
    "X-XSS-Protection": "1; mode=block",
    "Referrer-Policy": "strict-origin-when-cross-origin",
    "Permissions-Policy": "camera=(), microphone=(), geolocation=()",
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Methods": "GET, POST, PUT, DELETE, OPTIONS",
    "Access-Control-Allow-Headers": "Content-Type, Authorization, X-API-Key",
}


@dataclass
class RouteOptions:
    require_auth: bool = False
    # lets anonymous callers through even on routes that accept keys
    allow_public: bool = False
    # name from RATE_LIMIT_POLICIES or an explicit policy
    rate_limit: str | RateLimitPolicy = "default"
    skip_audit: bool = False


@dataclass
class AuthContext:
    ip_address: str
    user_agent: str
    is_authenticated: bool = False
    api_key_id: str | None = None
    user_id: str | None = None
    key_name: str | None = None
    role: str | None = None
    # handlers fill these in to enrich the audit entry
    request_params: dict | None = None
    error_message: str | None = None


Handler = Callable[[AuthContext], Awaitable[Any]]


def extract_api_key(request: Request) -> str | None:
    authorization = request.headers.get("authorization")
    if authorization and authorization.startswith("Bearer "):
        return authorization[7:]

    api_key_header = request.headers.get("x-api-key")
    if api_key_header:
        return api_key_header

    return request.query_params.get("api_key") or None


async def parse_body(request: Request, model: type[BaseModel]) -> BaseModel:
    """Validate a JSON body inside a handler so failures are audited like any other 400."""
    try:
        return model.model_validate(await request.json())
    except ValueError as e:
        # covers both malformed JSON and pydantic's ValidationError
        raise HTTPException(status_code=400, detail=_first_error(e))


def _first_error(error: ValueError) -> str:
    if isinstance(error, ValidationError):
        first = error.errors()[0]
        location = ".".join(str(part) for part in first["loc"])
        return f"{location}: {first['msg']}" if location else first["msg"]
    return "Request body must be valid JSON"


def apply_security_headers(response: Response) -> Response:
    for name, value in SECURITY_HEADERS.items():
        response.headers[name] = value
    return response


def rate_limit_headers(result: RateLimitResult) -> dict[str, str]:
    return {
        "X-RateLimit-Limit": str(result.limit),
        "X-RateLimit-Remaining": str(result.remaining),
        "X-RateLimit-Reset": result.reset_time.isoformat(),
    }


class Gateway:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        rate_limiter: RateLimiter,
        audit,
        policies: dict[str, RateLimitPolicy] = RATE_LIMIT_POLICIES,
        expose_error_details: bool = EXPOSE_ERROR_DETAILS,
    ):
        self.session_factory = session_factory
        self.rate_limiter = rate_limiter
        # AuditRecorder or AuditBuffer, anything with `async record(event)`
        self.audit = audit
        self.policies = policies
        self.expose_error_details = expose_error_details

    def policy_for(self, options: RouteOptions) -> RateLimitPolicy:
        if isinstance(options.rate_limit, RateLimitPolicy):
            return options.rate_limit
        return self.policies.get(options.rate_limit, self.policies["default"])

    async def handle(self, request: Request, handler: Handler, options: RouteOptions | None = None) -> Response:
        options = options or RouteOptions()
        started = time.perf_counter()
        ctx = AuthContext(ip_address=get_client_ip(request), user_agent=get_user_agent(request))

        try:
            async with self.session_factory() as db:
                await self._authenticate(db, request, options, ctx)
                admitted = await self._admit(db, request, options, ctx)
        except RateLimitExceeded as e:
            response = self._rate_limited_response(e.result)
            await self._audit(request, options, ctx, started, response, e.message)
            return apply_security_headers(response)
        except GatewayError as e:
            response = JSONResponse({"error": e.message}, status_code=e.status_code)
            await self._audit(request, options, ctx, started, response, e.message)
            return apply_security_headers(response)

        error_message = None
        try:
            response = self._to_response(await handler(ctx))
            error_message = ctx.error_message
        except HTTPException as e:
            response = JSONResponse({"error": e.detail}, status_code=e.status_code, headers=e.headers)
            error_message = ctx.error_message or str(e.detail)
        except GatewayError as e:
            if isinstance(e, PersistenceError):
                logging.error(f"Store failure in {request.method} {request.url.path}: {e}", exc_info=True)
            response = JSONResponse({"error": e.message}, status_code=e.status_code)
            error_message = e.message
        except Exception as e:
            logging.error(f"Handler error in {request.method} {request.url.path}: {e}", exc_info=True)
            failure = HandlerError(str(e) or e.__class__.__name__)
            body = {"error": HandlerError.public_message}
            if self.expose_error_details:
                body["details"] = failure.message
            response = JSONResponse(body, status_code=failure.status_code)
            error_message = failure.message

        if admitted is not None:
            response.headers.update(rate_limit_headers(admitted))
        await self._audit(request, options, ctx, started, response, error_message)
        return apply_security_headers(response)

    async def _authenticate(self, db: AsyncSession, request: Request, options: RouteOptions, ctx: AuthContext):
        presented = extract_api_key(request)

        if presented is None:
            if options.require_auth and not options.allow_public:
                raise CredentialRequired()
            return

        try:
            api_key = await validate_api_key(db, presented)
        except PersistenceError as e:
            raise PersistenceError("Authentication service error") from e

        if api_key is None:
            # same answer for unknown, malformed, revoked and expired keys
            raise InvalidCredential()

        ctx.is_authenticated = True
        ctx.api_key_id = str(api_key.id)
        ctx.user_id = api_key.user_id
        ctx.key_name = api_key.name
        ctx.role = api_key.role

    async def _admit(self, db: AsyncSession, request: Request, options: RouteOptions, ctx: AuthContext):
        if ctx.is_authenticated and should_bypass_rate_limit(ctx.role):
            return None

        identifier = ctx.api_key_id or ctx.ip_address
        result = await self.rate_limiter.admit(db, identifier, request.url.path, self.policy_for(options))
        if not result.allowed:
            raise RateLimitExceeded(result, result.error)
        return result

    def _rate_limited_response(self, result: RateLimitResult) -> Response:
        retry_after = result.retry_after(self.rate_limiter.clock())
        headers = rate_limit_headers(result)
        headers["Retry-After"] = str(retry_after)
        return JSONResponse(
            {
                "error": "Rate limit exceeded",
                "retryAfter": retry_after,
                "limit": result.limit,
                "remaining": result.remaining,
                "resetTime": result.reset_time.isoformat(),
            },
            status_code=429,
            headers=headers,
        )

    @staticmethod
    def _to_response(outcome: Any) -> Response:
        if isinstance(outcome, Response):
            return outcome
        return JSONResponse(jsonable_encoder(outcome))

    async def _audit(self, request, options, ctx, started, response, error_message):
        if options.skip_audit:
            return

        event = AuditEvent.from_request(
            request,
            response_status=response.status_code,
            response_time_ms=int((time.perf_counter() - started) * 1000),
            api_key_id=ctx.api_key_id,
            user_id=ctx.user_id,
            request_params=ctx.request_params,
            error_message=error_message,
            response_size_bytes=get_content_length(response.headers),
        )
        try:
            await self.audit.record(event)
        except Exception as e:
            # the audit trail must never replace the real response
            logging.error(f"Audit sink raised for {event.method} {event.endpoint}: {e}", exc_info=True)


def get_gateway(request: Request) -> Gateway:
    return request.app.state.gateway
