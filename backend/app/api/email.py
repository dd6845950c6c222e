"""Cross-subdomain email API.

Sibling subdomains call these routes with their ``x-api-key`` (and optionally
``x-subdomain``) to send templated mail through the central SMTP account.

Tests: backend/tests/test_email_api.py
"""

import logging
from datetime import datetime, timezone
from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, ConfigDict, EmailStr, Field

from app.deps import Context, email_rate_limit, require_api_key
from app.services import catalog
from app.services.api_keys import AuthResult

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/email", tags=["email"])

Authenticated = Annotated[AuthResult, Depends(require_api_key)]


# --- Pydantic schemas ---


class SendEmailRequest(BaseModel):
    """Body of ``POST /api/email/send``. Unknown fields are rejected."""

    model_config = ConfigDict(populate_by_name=True, extra="forbid")

    form_type: str = Field(..., alias="formType", min_length=1, max_length=100)
    recipient_email: EmailStr | None = Field(default=None, alias="recipientEmail")
    variables: dict[str, str] = Field(default_factory=dict)
    subdomain: str | None = Field(default=None, max_length=100)


class NotifySubmissionRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="forbid")

    form_type: str = Field(..., alias="formType", min_length=1, max_length=100)
    name: str
    email: EmailStr
    subject: str | None = None
    message: str


class SendEmailResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    success: bool
    message: str
    subdomain: str | None
    form_type: str = Field(serialization_alias="formType")


# --- Helpers ---


def _system_variables(subdomain: str | None) -> dict[str, str]:
    now = datetime.now(timezone.utc)
    return {
        "subdomain": subdomain or "unknown",
        "timestamp": now.isoformat(),
        "date": now.strftime("%B %d, %Y").replace(" 0", " "),
        "time": now.strftime("%I:%M %p").lstrip("0"),
    }


# --- Endpoints ---


@router.post(
    "/send",
    response_model=SendEmailResponse,
    response_model_by_alias=True,
    dependencies=[Depends(email_rate_limit)],
)
async def send_email(body: SendEmailRequest, auth: Authenticated, ctx: Context) -> SendEmailResponse:
    """Render the active template of ``formType`` and send it.

    Without ``recipientEmail`` the form type's configured recipients get it.
    """
    subdomain = auth.subdomain or body.subdomain
    try:
        async with ctx.pool.connection() as conn:
            form = await catalog.get_active_form_type(conn, body.form_type)
            template = await catalog.get_active_template(conn, form["id"]) if form else None
    except Exception:
        logger.exception("Form type lookup failed", extra={"form_type": body.form_type})
        raise HTTPException(status_code=500, detail="Internal server error")

    if form is None:
        raise HTTPException(
            status_code=400,
            detail=f"Form type '{body.form_type}' not found or inactive",
        )
    if template is None:
        raise HTTPException(
            status_code=400,
            detail=f"No active template found for form type '{body.form_type}'",
        )

    variables = {**body.variables, **_system_variables(subdomain)}
    success = await ctx.email.send_template_email(
        template["slug"],
        variables,
        body.recipient_email,
        subdomain=subdomain,
        form_type=body.form_type,
    )

    logger.info(
        "Cross-subdomain email request",
        extra={
            "subdomain": subdomain,
            "form_type": body.form_type,
            "recipient": "custom" if body.recipient_email else "configured",
            "success": success,
        },
    )

    return SendEmailResponse(
        success=success,
        message="Email sent successfully" if success else "Failed to send email",
        subdomain=subdomain,
        form_type=body.form_type,
    )


@router.get("/form-types")
async def list_form_types(auth: Authenticated, ctx: Context) -> dict:
    """Active form types the caller may use as ``formType``."""
    try:
        async with ctx.pool.connection() as conn:
            types = await catalog.list_active_form_types(conn)
    except Exception:
        logger.exception("Failed to list form types")
        raise HTTPException(status_code=500, detail="Internal server error")
    return {"success": True, "data": types}


@router.post("/notify-submission", dependencies=[Depends(email_rate_limit)])
async def notify_submission(body: NotifySubmissionRequest, auth: Authenticated, ctx: Context) -> dict:
    """Forward a public form submission to the form type's recipients."""
    try:
        async with ctx.pool.connection() as conn:
            form = await catalog.get_active_form_type(conn, body.form_type)
    except Exception:
        logger.exception("Form type lookup failed", extra={"form_type": body.form_type})
        raise HTTPException(status_code=500, detail="Internal server error")
    if form is None:
        raise HTTPException(
            status_code=400,
            detail=f"Form type '{body.form_type}' not found or inactive",
        )

    success = await ctx.email.notify_form_submission(
        body.form_type,
        {
            "name": body.name,
            "email": body.email,
            "subject": body.subject,
            "message": body.message,
        },
        subdomain=auth.subdomain,
    )

    logger.info(
        "Cross-subdomain form submission notification",
        extra={"subdomain": auth.subdomain, "form_type": body.form_type, "success": success},
    )
    return {
        "success": success,
        "message": "Notification sent" if success else "Failed to send notification",
    }


@router.get("/health")
async def email_health(ctx: Context) -> dict:
    """Unauthenticated SMTP + database liveness report."""
    email_status = await ctx.email.test_connection()
    database_ok = await ctx.pool.health_check()
    return {
        "success": True,
        "status": "healthy" if email_status["success"] and database_ok else "degraded",
        "email": email_status,
        "database": database_ok,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
