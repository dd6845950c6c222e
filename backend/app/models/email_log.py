from datetime import datetime

from sqlalchemy import DateTime, Integer, String, Text, func
from sqlalchemy.orm import Mapped, mapped_column

from app.models import Base

EMAIL_STATUS_SENT = "sent"
EMAIL_STATUS_FAILED = "failed"


class EmailLog(Base):
    """One row per delivery attempt. Recipients are stored masked."""

    __tablename__ = "email_logs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    template_slug: Mapped[str | None] = mapped_column(String(100), default=None)
    recipient_email: Mapped[str] = mapped_column(String(255))
    form_type: Mapped[str | None] = mapped_column(String(100), default=None, index=True)
    status: Mapped[str] = mapped_column(String(20), index=True)
    error_message: Mapped[str | None] = mapped_column(Text, default=None)
    subdomain: Mapped[str | None] = mapped_column(String(100), default=None, index=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, server_default=func.now(), index=True
    )
