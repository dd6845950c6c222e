"""Admin console endpoints for email API keys.

Guarded by ``X-Admin-Token``. A created key's raw value appears in the
creation response only; afterwards every listing shows the fixed preview
``molo_****...****``.
"""

import logging
from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException, Path
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy import delete, insert, select, update
from sqlalchemy.exc import IntegrityError

from app.deps import Context, require_admin
from app.models.api_key import EmailApiKey
from app.services.api_keys import generate_api_key, hash_api_key, migrate_plaintext_keys, to_public_dict

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/admin", tags=["admin"], dependencies=[Depends(require_admin)])

KeyId = Annotated[int, Path(ge=1)]

_PUBLIC_COLUMNS = (
    EmailApiKey.id,
    EmailApiKey.subdomain,
    EmailApiKey.description,
    EmailApiKey.is_active,
    EmailApiKey.created_at,
    EmailApiKey.last_used_at,
)


class CreateApiKeyRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    subdomain: str = Field(..., min_length=1, max_length=100)
    description: str | None = None


async def _fetch_public(ctx, key_id: int) -> dict | None:
    rows = await ctx.pool.execute_query(select(*_PUBLIC_COLUMNS).where(EmailApiKey.id == key_id))
    return rows[0] if rows else None


@router.get("/api-keys")
async def list_api_keys(ctx: Context) -> dict:
    """All keys, newest first, without secret material."""
    rows = await ctx.pool.execute_query(
        select(*_PUBLIC_COLUMNS).order_by(EmailApiKey.created_at.desc(), EmailApiKey.id.desc())
    )
    return {"success": True, "data": [to_public_dict(row) for row in rows]}


@router.post("/api-keys", status_code=201)
async def create_api_key(body: CreateApiKeyRequest, ctx: Context) -> dict:
    """Issue a key for a subdomain. The raw key is returned exactly once."""
    existing = await ctx.pool.execute_query(
        select(EmailApiKey.id).where(EmailApiKey.subdomain == body.subdomain)
    )
    if existing:
        raise HTTPException(status_code=409, detail="An API key already exists for this subdomain")

    raw_key = generate_api_key()
    try:
        rows = await ctx.pool.execute_query(
            insert(EmailApiKey)
            .values(
                subdomain=body.subdomain,
                key_hash=hash_api_key(raw_key),
                description=body.description,
                is_active=True,
            )
            .returning(*_PUBLIC_COLUMNS)
        )
    except IntegrityError:
        # Lost a race with a concurrent create for the same subdomain.
        raise HTTPException(status_code=409, detail="An API key already exists for this subdomain")

    record = rows[0]
    logger.info("API key created", extra={"key_id": record["id"], "subdomain": record["subdomain"]})

    data = to_public_dict(record)
    del data["keyPreview"]
    data["rawApiKey"] = raw_key
    return {
        "success": True,
        "data": data,
        "message": "API key created successfully. Please save the API key now as it will not be shown again.",
    }


@router.delete("/api-keys/{key_id}")
async def delete_api_key(key_id: KeyId, ctx: Context) -> dict:
    """Hard-delete a key."""
    existing = await _fetch_public(ctx, key_id)
    if existing is None:
        raise HTTPException(status_code=404, detail="API key not found")

    await ctx.pool.execute_query(delete(EmailApiKey).where(EmailApiKey.id == key_id))
    logger.info("API key deleted", extra={"key_id": key_id, "subdomain": existing["subdomain"]})
    return {"success": True, "message": "API key deleted successfully"}


@router.patch("/api-keys/{key_id}")
async def toggle_api_key(key_id: KeyId, ctx: Context) -> dict:
    """Flip ``is_active``. Inactive keys fail validation immediately."""
    existing = await _fetch_public(ctx, key_id)
    if existing is None:
        raise HTTPException(status_code=404, detail="API key not found")

    await ctx.pool.execute_query(
        update(EmailApiKey)
        .where(EmailApiKey.id == key_id)
        .values(is_active=not existing["is_active"])
    )
    record = await _fetch_public(ctx, key_id)
    logger.info(
        "API key status toggled",
        extra={"key_id": key_id, "subdomain": record["subdomain"], "is_active": record["is_active"]},
    )
    return {"success": True, "data": to_public_dict(record)}


@router.post("/api-keys/migrate")
async def migrate_api_keys(ctx: Context) -> dict:
    """Hash every remaining plaintext key."""
    migrated = await migrate_plaintext_keys(ctx.pool)
    return {"success": True, "migrated": migrated}


@router.get("/pool-stats")
async def pool_stats(ctx: Context) -> dict:
    stats = ctx.pool.get_connection_stats()
    healthy = await ctx.pool.health_check()
    return {"success": True, "data": {**stats.as_dict(), "healthy": healthy}}
