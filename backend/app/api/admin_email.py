"""Admin console endpoints for the email catalog.

Form types, their templates and their notification recipients. Same
``X-Admin-Token`` guard and ``{success, data}`` envelope as the key routes.

Tests: backend/tests/test_admin_email.py
"""

import logging
from typing import Annotated, Any

from fastapi import APIRouter, Depends, HTTPException, Path
from pydantic import BaseModel, ConfigDict, EmailStr, Field
from sqlalchemy import delete, insert, select, update
from sqlalchemy.exc import IntegrityError

from app.deps import Context, require_admin
from app.models.form import EmailTemplate, FormType, NotificationRecipient

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/admin", tags=["admin"], dependencies=[Depends(require_admin)])

ItemId = Annotated[int, Path(ge=1)]


# --- Pydantic schemas ---


class _CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="forbid")


class CreateFormTypeRequest(_CamelModel):
    name: str = Field(..., min_length=1, max_length=255)
    slug: str = Field(..., min_length=1, max_length=100, pattern=r"^[a-z0-9][a-z0-9_-]*$")
    description: str | None = None
    is_active: bool = Field(default=True, alias="isActive")


class CreateTemplateRequest(_CamelModel):
    form_type_id: int | None = Field(default=None, alias="formTypeId", ge=1)
    name: str = Field(..., min_length=1, max_length=255)
    slug: str = Field(..., min_length=1, max_length=100)
    subject: str = Field(..., min_length=1, max_length=500)
    html_body: str = Field(..., min_length=1, alias="htmlBody")
    text_body: str | None = Field(default=None, alias="textBody")
    is_active: bool = Field(default=True, alias="isActive")


class UpdateTemplateRequest(_CamelModel):
    """Partial update; only the fields sent are written."""

    form_type_id: int | None = Field(default=None, alias="formTypeId", ge=1)
    name: str | None = Field(default=None, min_length=1, max_length=255)
    slug: str | None = Field(default=None, min_length=1, max_length=100)
    subject: str | None = Field(default=None, min_length=1, max_length=500)
    html_body: str | None = Field(default=None, min_length=1, alias="htmlBody")
    text_body: str | None = Field(default=None, alias="textBody")
    is_active: bool | None = Field(default=None, alias="isActive")


class CreateRecipientRequest(_CamelModel):
    email: EmailStr
    name: str | None = Field(default=None, max_length=255)
    form_type_id: int | None = Field(default=None, alias="formTypeId", ge=1)
    is_active: bool = Field(default=True, alias="isActive")


# --- Serialisers ---

_FORM_TYPE_COLUMNS = (
    FormType.id,
    FormType.name,
    FormType.slug,
    FormType.description,
    FormType.is_active,
    FormType.created_at,
)

_TEMPLATE_COLUMNS = (
    EmailTemplate.id,
    EmailTemplate.form_type_id,
    EmailTemplate.name,
    EmailTemplate.slug,
    EmailTemplate.subject,
    EmailTemplate.html_body,
    EmailTemplate.text_body,
    EmailTemplate.is_active,
    EmailTemplate.created_at,
    EmailTemplate.updated_at,
)

_RECIPIENT_COLUMNS = (
    NotificationRecipient.id,
    NotificationRecipient.form_type_id,
    NotificationRecipient.email,
    NotificationRecipient.name,
    NotificationRecipient.is_active,
    NotificationRecipient.created_at,
)


def _form_type_dict(row: Any) -> dict[str, Any]:
    return {
        "id": row["id"],
        "name": row["name"],
        "slug": row["slug"],
        "description": row["description"],
        "isActive": bool(row["is_active"]),
        "createdAt": row["created_at"],
    }


def _template_dict(row: Any) -> dict[str, Any]:
    return {
        "id": row["id"],
        "formTypeId": row["form_type_id"],
        "formTypeName": row.get("form_type_name"),
        "name": row["name"],
        "slug": row["slug"],
        "subject": row["subject"],
        "htmlBody": row["html_body"],
        "textBody": row["text_body"],
        "isActive": bool(row["is_active"]),
        "createdAt": row["created_at"],
        "updatedAt": row["updated_at"],
    }


def _recipient_dict(row: Any) -> dict[str, Any]:
    return {
        "id": row["id"],
        "formTypeId": row["form_type_id"],
        "formTypeName": row.get("form_type_name"),
        "email": row["email"],
        "name": row["name"],
        "isActive": bool(row["is_active"]),
        "createdAt": row["created_at"],
    }


# --- Helpers ---


async def _require_form_type(ctx, form_type_id: int | None) -> None:
    if form_type_id is None:
        return
    rows = await ctx.pool.execute_query(select(FormType.id).where(FormType.id == form_type_id))
    if not rows:
        raise HTTPException(status_code=400, detail=f"Form type {form_type_id} does not exist")


async def _fetch_one(ctx, columns, model, item_id: int, missing: str) -> dict:
    rows = await ctx.pool.execute_query(select(*columns).where(model.id == item_id))
    if not rows:
        raise HTTPException(status_code=404, detail=missing)
    return rows[0]


# --- Form types ---


@router.get("/form-types")
async def list_form_types(ctx: Context) -> dict:
    """Every form type, inactive ones included."""
    rows = await ctx.pool.execute_query(select(*_FORM_TYPE_COLUMNS).order_by(FormType.id))
    return {"success": True, "data": [_form_type_dict(row) for row in rows]}


@router.post("/form-types", status_code=201)
async def create_form_type(body: CreateFormTypeRequest, ctx: Context) -> dict:
    try:
        rows = await ctx.pool.execute_query(
            insert(FormType)
            .values(name=body.name, slug=body.slug, description=body.description, is_active=body.is_active)
            .returning(*_FORM_TYPE_COLUMNS)
        )
    except IntegrityError:
        raise HTTPException(status_code=409, detail=f"Form type '{body.slug}' already exists")

    logger.info("Form type created", extra={"form_type_id": rows[0]["id"], "form_type": body.slug})
    return {"success": True, "data": _form_type_dict(rows[0])}


@router.patch("/form-types/{form_type_id}")
async def toggle_form_type(form_type_id: ItemId, ctx: Context) -> dict:
    """Flip ``is_active``. Inactive form types are rejected by ``/api/email/send``."""
    existing = await _fetch_one(ctx, _FORM_TYPE_COLUMNS, FormType, form_type_id, "Form type not found")
    rows = await ctx.pool.execute_query(
        update(FormType)
        .where(FormType.id == form_type_id)
        .values(is_active=not existing["is_active"])
        .returning(*_FORM_TYPE_COLUMNS)
    )
    logger.info("Form type status toggled", extra={"form_type_id": form_type_id, "is_active": rows[0]["is_active"]})
    return {"success": True, "data": _form_type_dict(rows[0])}


# --- Templates ---


@router.get("/templates")
async def list_templates(ctx: Context) -> dict:
    """All templates with their form type name, newest first."""
    rows = await ctx.pool.execute_query(
        select(*_TEMPLATE_COLUMNS, FormType.name.label("form_type_name"))
        .outerjoin(FormType, EmailTemplate.form_type_id == FormType.id)
        .order_by(EmailTemplate.created_at.desc(), EmailTemplate.id.desc())
    )
    return {"success": True, "data": [_template_dict(row) for row in rows]}


@router.post("/templates", status_code=201)
async def create_template(body: CreateTemplateRequest, ctx: Context) -> dict:
    await _require_form_type(ctx, body.form_type_id)
    try:
        rows = await ctx.pool.execute_query(
            insert(EmailTemplate).values(**body.model_dump()).returning(*_TEMPLATE_COLUMNS)
        )
    except IntegrityError:
        raise HTTPException(status_code=409, detail=f"Template '{body.slug}' already exists")

    logger.info("Email template created", extra={"template_id": rows[0]["id"], "template_slug": body.slug})
    return {"success": True, "data": _template_dict(rows[0])}


@router.put("/templates/{template_id}")
async def update_template(template_id: ItemId, body: UpdateTemplateRequest, ctx: Context) -> dict:
    await _fetch_one(ctx, _TEMPLATE_COLUMNS, EmailTemplate, template_id, "Template not found")
    changes = body.model_dump(exclude_unset=True)
    if "form_type_id" in changes:
        await _require_form_type(ctx, changes["form_type_id"])
    if not changes:
        raise HTTPException(status_code=400, detail="No fields to update")

    try:
        rows = await ctx.pool.execute_query(
            update(EmailTemplate)
            .where(EmailTemplate.id == template_id)
            .values(**changes)
            .returning(*_TEMPLATE_COLUMNS)
        )
    except IntegrityError:
        raise HTTPException(status_code=409, detail=f"Template '{changes.get('slug')}' already exists")

    logger.info("Email template updated", extra={"template_id": template_id, "fields": sorted(changes)})
    return {"success": True, "data": _template_dict(rows[0])}


@router.delete("/templates/{template_id}")
async def delete_template(template_id: ItemId, ctx: Context) -> dict:
    await _fetch_one(ctx, _TEMPLATE_COLUMNS, EmailTemplate, template_id, "Template not found")
    await ctx.pool.execute_query(delete(EmailTemplate).where(EmailTemplate.id == template_id))
    logger.info("Email template deleted", extra={"template_id": template_id})
    return {"success": True, "message": "Template deleted successfully"}


# --- Recipients ---


@router.get("/recipients")
async def list_recipients(ctx: Context) -> dict:
    rows = await ctx.pool.execute_query(
        select(*_RECIPIENT_COLUMNS, FormType.name.label("form_type_name"))
        .outerjoin(FormType, NotificationRecipient.form_type_id == FormType.id)
        .order_by(NotificationRecipient.created_at.desc(), NotificationRecipient.id.desc())
    )
    return {"success": True, "data": [_recipient_dict(row) for row in rows]}


@router.post("/recipients", status_code=201)
async def add_recipient(body: CreateRecipientRequest, ctx: Context) -> dict:
    await _require_form_type(ctx, body.form_type_id)
    rows = await ctx.pool.execute_query(
        insert(NotificationRecipient)
        .values(
            email=str(body.email),
            name=body.name,
            form_type_id=body.form_type_id,
            is_active=body.is_active,
        )
        .returning(*_RECIPIENT_COLUMNS)
    )
    logger.info("Notification recipient added", extra={"recipient_id": rows[0]["id"], "form_type_id": body.form_type_id})
    return {"success": True, "data": _recipient_dict(rows[0])}


@router.delete("/recipients/{recipient_id}")
async def remove_recipient(recipient_id: ItemId, ctx: Context) -> dict:
    await _fetch_one(ctx, _RECIPIENT_COLUMNS, NotificationRecipient, recipient_id, "Recipient not found")
    await ctx.pool.execute_query(delete(NotificationRecipient).where(NotificationRecipient.id == recipient_id))
    logger.info("Notification recipient removed", extra={"recipient_id": recipient_id})
    return {"success": True, "message": "Recipient removed successfully"}


@router.patch("/recipients/{recipient_id}")
async def toggle_recipient(recipient_id: ItemId, ctx: Context) -> dict:
    existing = await _fetch_one(ctx, _RECIPIENT_COLUMNS, NotificationRecipient, recipient_id, "Recipient not found")
    rows = await ctx.pool.execute_query(
        update(NotificationRecipient)
        .where(NotificationRecipient.id == recipient_id)
        .values(is_active=not existing["is_active"])
        .returning(*_RECIPIENT_COLUMNS)
    )
    logger.info(
        "Notification recipient status toggled",
        extra={"recipient_id": recipient_id, "is_active": rows[0]["is_active"]},
    )
    return {"success": True, "data": _recipient_dict(rows[0])}
