"""Read-side lookups for form types, templates and notification recipients.

Plain async functions over a borrowed ``AsyncConnection`` so callers decide
how long the connection is held.
"""

from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncConnection

from app.models.form import EmailTemplate, FormType, NotificationRecipient


async def get_active_form_type(conn: AsyncConnection, slug: str) -> dict[str, Any] | None:
    result = await conn.execute(
        select(FormType.id, FormType.name, FormType.slug)
        .where(FormType.slug == slug, FormType.is_active.is_(True))
        .limit(1)
    )
    row = result.mappings().first()
    return dict(row) if row else None


async def list_active_form_types(conn: AsyncConnection) -> list[dict[str, Any]]:
    result = await conn.execute(
        select(FormType.id, FormType.name, FormType.slug)
        .where(FormType.is_active.is_(True))
        .order_by(FormType.id)
    )
    return [dict(row) for row in result.mappings().all()]


_TEMPLATE_COLUMNS = (
    EmailTemplate.id,
    EmailTemplate.form_type_id,
    EmailTemplate.slug,
    EmailTemplate.subject,
    EmailTemplate.html_body,
    EmailTemplate.text_body,
)


async def get_active_template(conn: AsyncConnection, form_type_id: int) -> dict[str, Any] | None:
    """First active template attached to a form type."""
    result = await conn.execute(
        select(*_TEMPLATE_COLUMNS)
        .where(EmailTemplate.form_type_id == form_type_id, EmailTemplate.is_active.is_(True))
        .order_by(EmailTemplate.id)
        .limit(1)
    )
    row = result.mappings().first()
    return dict(row) if row else None


async def get_active_template_by_slug(conn: AsyncConnection, slug: str) -> dict[str, Any] | None:
    result = await conn.execute(
        select(*_TEMPLATE_COLUMNS)
        .where(EmailTemplate.slug == slug, EmailTemplate.is_active.is_(True))
        .limit(1)
    )
    row = result.mappings().first()
    return dict(row) if row else None


async def get_recipients(conn: AsyncConnection, form_type_id: int | None = None) -> list[str]:
    """Active recipient addresses, optionally narrowed to one form type."""
    stmt = select(NotificationRecipient.email).where(NotificationRecipient.is_active.is_(True))
    if form_type_id is not None:
        stmt = stmt.where(NotificationRecipient.form_type_id == form_type_id)
    result = await conn.execute(stmt.order_by(NotificationRecipient.id))
    return list(result.scalars().all())
