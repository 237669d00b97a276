import uuid
from datetime import datetime, timedelta, timezone

from fastapi import APIRouter, Depends, HTTPException, Request, status
from sqlalchemy import case, desc, distinct, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from .auth import require_user
from .database import get_db
from .gateway import AuthContext, Gateway, RouteOptions, get_gateway
from .models import AuditLog, Association

SUSPICIOUS_WINDOW = timedelta(hours=1)
SUSPICIOUS_MAX_REQUESTS = 100
SUSPICIOUS_MAX_ERROR_RATE = 50.0
SUSPICIOUS_MAX_ERRORS = 20

router = APIRouter(
    prefix="/api/stats",
    tags=["Analytics"]
)

STATS_ROUTE = RouteOptions(require_auth=True, rate_limit="default")


async def usage_stats(
    db: AsyncSession,
    api_key_id: uuid.UUID | None = None,
    user_id: str | None = None,
    start: datetime | None = None,
    end: datetime | None = None,
) -> dict:
    filters = []
    if api_key_id:
        filters.append(AuditLog.api_key_id == api_key_id)
    if user_id:
        filters.append(AuditLog.user_id == user_id)
    if start:
        filters.append(AuditLog.created_at >= start)
    if end:
        filters.append(AuditLog.created_at <= end)

    totals_query = select(
        func.count(),
        func.count(distinct(AuditLog.ip_address)),
        func.avg(AuditLog.response_time_ms),
        func.sum(case((AuditLog.response_status >= 400, 1), else_=0)),
    ).where(*filters)
    total_requests, unique_ips, avg_response_time, errors = (await db.execute(totals_query)).one()

    if not total_requests:
        return {
            "total_requests": 0,
            "unique_ips": 0,
            "avg_response_time": 0,
            "error_rate": 0,
            "top_endpoints": [],
        }

    top_endpoints_query = select(
        AuditLog.endpoint, func.count().label('count')
    ).where(*filters).group_by(AuditLog.endpoint).order_by(desc('count'), AuditLog.endpoint).limit(10)
    top_endpoints_res = await db.execute(top_endpoints_query)

    return {
        "total_requests": total_requests,
        "unique_ips": unique_ips,
        "avg_response_time": round(float(avg_response_time or 0)),
        "error_rate": round((errors or 0) / total_requests * 100, 2),
        "top_endpoints": [dict(row) for row in top_endpoints_res.mappings().all()],
    }


async def list_associations(
    db: AsyncSession,
    ip_address: str | None = None,
    api_key_id: uuid.UUID | None = None,
    user_id: str | None = None,
    min_hit_count: int | None = None,
) -> list[Association]:
    query = select(Association).order_by(desc(Association.hit_count), Association.ip_address)
    if ip_address:
        query = query.where(Association.ip_address == ip_address)
    if api_key_id:
        query = query.where(Association.api_key_id == api_key_id)
    if user_id:
        query = query.where(Association.user_id == user_id)
    if min_hit_count:
        query = query.where(Association.hit_count >= min_hit_count)

    result = await db.execute(query)
    return list(result.scalars().all())


async def suspicious_activity(db: AsyncSession, now: datetime | None = None) -> list[dict]:
    since = (now or datetime.now(timezone.utc)) - SUSPICIOUS_WINDOW

    per_ip_query = select(
        AuditLog.ip_address,
        func.count().label('total'),
        func.sum(case((AuditLog.response_status >= 400, 1), else_=0)).label('errors'),
        func.count(distinct(AuditLog.endpoint)).label('endpoints'),
    ).where(AuditLog.created_at >= since).group_by(AuditLog.ip_address)
    per_ip = (await db.execute(per_ip_query)).all()

    suspicious = []
    for row in per_ip:
        errors = row.errors or 0
        error_rate = errors / row.total * 100
        if (
            row.total > SUSPICIOUS_MAX_REQUESTS
            or error_rate > SUSPICIOUS_MAX_ERROR_RATE
            or errors > SUSPICIOUS_MAX_ERRORS
        ):
            suspicious.append({
                "ip_address": row.ip_address,
                "total_requests": row.total,
                "error_rate": round(error_rate, 2),
                "unique_endpoints": row.endpoints,
                "recent_errors": errors,
            })

    suspicious.sort(key=lambda entry: entry["total_requests"], reverse=True)
    return suspicious


def _key_id_param(request: Request) -> uuid.UUID | None:
    raw = request.query_params.get("api_key_id")
    if not raw:
        return None
    try:
        return uuid.UUID(raw)
    except ValueError:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid api_key_id")


def _int_param(request: Request, name: str, default: int) -> int:
    raw = request.query_params.get(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=f"{name} must be an integer")


@router.get("/usage")
async def get_usage(
    request: Request,
    gateway: Gateway = Depends(get_gateway),
    db: AsyncSession = Depends(get_db),
):
    async def handler(ctx: AuthContext):
        user_id = require_user(ctx)
        api_key_id = _key_id_param(request)
        days = _int_param(request, "days", 30)
        ctx.request_params = {"days": days, "api_key_id": str(api_key_id) if api_key_id else None}

        if days < 1 or days > 90:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Days parameter must be between 1 and 90")

        end = datetime.now(timezone.utc)
        start = end - timedelta(days=days)
        stats = await usage_stats(db, api_key_id=api_key_id, user_id=user_id, start=start, end=end)
        return {
            "stats": stats,
            "time_range": {"start": start.isoformat(), "end": end.isoformat()},
            "requested_days": days,
        }

    return await gateway.handle(request, handler, STATS_ROUTE)


@router.get("/associations")
async def get_associations(
    request: Request,
    gateway: Gateway = Depends(get_gateway),
    db: AsyncSession = Depends(get_db),
):
    async def handler(ctx: AuthContext):
        user_id = require_user(ctx)
        api_key_id = _key_id_param(request)
        min_hits = _int_param(request, "min_hits", 1)
        ctx.request_params = {"api_key_id": str(api_key_id) if api_key_id else None, "min_hits": min_hits}

        associations = await list_associations(
            db,
            api_key_id=api_key_id,
            user_id=user_id,
            min_hit_count=min_hits if min_hits > 0 else None,
        )
        return {
            "associations": [association.to_dict() for association in associations],
            "total": len(associations),
        }

    return await gateway.handle(request, handler, STATS_ROUTE)


@router.get("/suspicious")
async def get_suspicious_activity(
    request: Request,
    gateway: Gateway = Depends(get_gateway),
    db: AsyncSession = Depends(get_db),
):
    async def handler(ctx: AuthContext):
        if ctx.role not in ("root", "admin"):
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Admin API key required")
        entries = await suspicious_activity(db)
        return {"suspicious": entries, "total": len(entries)}

    return await gateway.handle(request, handler, STATS_ROUTE)
