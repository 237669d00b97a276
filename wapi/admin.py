"""Administrative key minting.

Bypasses per-user issuance and is gated by a shared secret sent in
``X-Admin-Secret``. With no ADMIN_SECRET configured the surface is off.
"""

import hmac
import logging
from typing import Literal

from fastapi import APIRouter, Depends, HTTPException, Request, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from . import config
from .audit import get_client_ip
from .auth import KeyName, expiry_from_days
from .database import get_db
from .gateway import AuthContext, Gateway, RouteOptions, get_gateway, parse_body
from .security import create_api_key, get_api_key, list_api_keys


class AdminKeyCreateRequest(BaseModel):
    name: KeyName
    user_id: str | None = None
    role: Literal["root", "admin", "user"] = "root"
    expires_in_days: int = Field(default=365, gt=0)


router = APIRouter(
    prefix="/api/admin",
    tags=["Admin"]
)

# callers are identified by the shared secret, not by an API key
ADMIN_ROUTE = RouteOptions(require_auth=False, allow_public=True, rate_limit="auth")


def check_admin_secret(request: Request) -> None:
    expected = config.ADMIN_SECRET
    if not expected:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Admin operations not configured")

    presented = request.headers.get("x-admin-secret", "")
    if not hmac.compare_digest(presented.encode("utf-8"), expected.encode("utf-8")):
        logging.warning(f"Rejected admin request from {get_client_ip(request)}")
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")


@router.post("/api-keys")
async def create_admin_key(
    request: Request,
    gateway: Gateway = Depends(get_gateway),
    db: AsyncSession = Depends(get_db),
):
    async def handler(ctx: AuthContext):
        check_admin_secret(request)
        payload = await parse_body(request, AdminKeyCreateRequest)
        ctx.request_params = payload.model_dump()

        plaintext, key_id = await create_api_key(
            db,
            name=payload.name,
            user_id=payload.user_id,
            role=payload.role,
            expires_at=expiry_from_days(payload.expires_in_days),
        )
        created = await get_api_key(db, key_id)
        return JSONResponse(
            {
                "success": True,
                "api_key": {**created.to_dict(), "key": plaintext, "user_id": payload.user_id or "system"},
                "message": f"{payload.role} API key created successfully. "
                           "Store this key securely - it will not be shown again.",
            },
            status_code=status.HTTP_201_CREATED,
        )

    return await gateway.handle(request, handler, ADMIN_ROUTE)


@router.get("/api-keys")
async def list_all_keys(
    request: Request,
    gateway: Gateway = Depends(get_gateway),
    db: AsyncSession = Depends(get_db),
):
    async def handler(ctx: AuthContext):
        check_admin_secret(request)
        keys = await list_api_keys(db)
        return {"api_keys": [key.to_dict() for key in keys], "count": len(keys)}

    return await gateway.handle(request, handler, ADMIN_ROUTE)
