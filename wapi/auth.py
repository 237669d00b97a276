from datetime import datetime, timedelta, timezone
from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException, Request, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field, StringConstraints
from sqlalchemy.ext.asyncio import AsyncSession

from .config import MAX_KEYS_PER_USER
from .database import get_db
from .errors import KeyNotFound
from .gateway import AuthContext, Gateway, RouteOptions, get_gateway, parse_body
from .models import APIKey
from .security import (
    create_api_key,
    delete_api_key,
    get_api_key,
    list_user_api_keys,
    update_api_key,
)

KeyName = Annotated[str, StringConstraints(strip_whitespace=True, min_length=1, max_length=255)]


class APIKeyCreateRequest(BaseModel):
    name: KeyName
    expires_in_days: int | None = Field(default=None, gt=0)


class APIKeyUpdateRequest(BaseModel):
    name: KeyName | None = None
    is_active: bool | None = None
    expires_in_days: int | None = Field(default=None, gt=0)


router = APIRouter(
    prefix="/api/api-keys",
    tags=["API Keys"]
)

KEY_ROUTE = RouteOptions(require_auth=True, rate_limit="default")
CREATE_KEY_ROUTE = RouteOptions(require_auth=True, rate_limit="auth")


def expiry_from_days(days: int | None) -> datetime | None:
    return datetime.now(timezone.utc) + timedelta(days=days) if days else None


def require_user(ctx: AuthContext) -> str:
    # system keys have no owner, so there is nothing to manage
    if not ctx.user_id:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="User authentication required")
    return ctx.user_id


async def owned_key(db: AsyncSession, key_id: str, user_id: str) -> APIKey:
    db_key = await get_api_key(db, key_id)
    if db_key.user_id != user_id:
        # other users' keys look exactly like missing ones
        raise KeyNotFound()
    return db_key


@router.get("")
async def list_keys(
    request: Request,
    gateway: Gateway = Depends(get_gateway),
    db: AsyncSession = Depends(get_db),
):
    async def handler(ctx: AuthContext):
        keys = await list_user_api_keys(db, require_user(ctx))
        return {"api_keys": [key.to_dict() for key in keys]}

    return await gateway.handle(request, handler, KEY_ROUTE)


@router.post("")
async def generate_new_api_key(
    request: Request,
    gateway: Gateway = Depends(get_gateway),
    db: AsyncSession = Depends(get_db),
):
    async def handler(ctx: AuthContext):
        user_id = require_user(ctx)
        payload = await parse_body(request, APIKeyCreateRequest)
        ctx.request_params = payload.model_dump()

        existing = await list_user_api_keys(db, user_id)
        if len(existing) >= MAX_KEYS_PER_USER:
            ctx.request_params["existing_count"] = len(existing)
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail=f"Maximum number of API keys ({MAX_KEYS_PER_USER}) reached",
            )

        plaintext, key_id = await create_api_key(
            db,
            name=payload.name,
            user_id=user_id,
            role="user",
            expires_at=expiry_from_days(payload.expires_in_days),
        )
        created = await get_api_key(db, key_id)
        return JSONResponse(
            {
                "api_key": {**created.to_dict(), "key": plaintext},
                "message": "API key created successfully. Store this key securely - it will not be shown again.",
            },
            status_code=status.HTTP_201_CREATED,
        )

    return await gateway.handle(request, handler, CREATE_KEY_ROUTE)


@router.get("/{key_id}")
async def get_key(
    key_id: str,
    request: Request,
    gateway: Gateway = Depends(get_gateway),
    db: AsyncSession = Depends(get_db),
):
    async def handler(ctx: AuthContext):
        ctx.request_params = {"key_id": key_id}
        db_key = await owned_key(db, key_id, require_user(ctx))
        return {"api_key": db_key.to_dict()}

    return await gateway.handle(request, handler, KEY_ROUTE)


@router.put("/{key_id}")
async def update_key(
    key_id: str,
    request: Request,
    gateway: Gateway = Depends(get_gateway),
    db: AsyncSession = Depends(get_db),
):
    async def handler(ctx: AuthContext):
        ctx.request_params = {"key_id": key_id}
        user_id = require_user(ctx)
        payload = await parse_body(request, APIKeyUpdateRequest)
        changes = payload.model_dump(exclude_none=True)
        ctx.request_params.update(changes)

        if not changes:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="No valid fields to update")

        await owned_key(db, key_id, user_id)
        if "expires_in_days" in changes:
            changes["expires_at"] = expiry_from_days(changes.pop("expires_in_days"))

        updated = await update_api_key(db, key_id, **changes)
        return {"api_key": updated.to_dict()}

    return await gateway.handle(request, handler, KEY_ROUTE)


@router.delete("/{key_id}")
async def revoke_key(
    key_id: str,
    request: Request,
    gateway: Gateway = Depends(get_gateway),
    db: AsyncSession = Depends(get_db),
):
    async def handler(ctx: AuthContext):
        ctx.request_params = {"key_id": key_id}
        await owned_key(db, key_id, require_user(ctx))
        await delete_api_key(db, key_id)
        return {"deleted": True, "id": key_id}

    return await gateway.handle(request, handler, KEY_ROUTE)
