from datetime import datetime

from sqlalchemy import Boolean, DateTime, Integer, String, Text, func
from sqlalchemy.orm import Mapped, mapped_column

from app.models import Base


class EmailApiKey(Base):
    """Per-subdomain credential for the cross-subdomain email API.

    New keys only persist ``key_hash`` (SHA-256 hex). ``api_key`` holds the
    raw value of keys issued before hashing was introduced; the migration
    routine moves it into ``key_hash`` and clears it. When both are set the
    hash wins.
    """

    __tablename__ = "email_api_keys"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    subdomain: Mapped[str] = mapped_column(String(100), unique=True, index=True)
    # Deprecated plaintext column, NULL once migrated.
    api_key: Mapped[str | None] = mapped_column(String(128), default=None)
    key_hash: Mapped[str | None] = mapped_column(String(64), default=None, index=True)
    description: Mapped[str | None] = mapped_column(Text, default=None)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())
    last_used_at: Mapped[datetime | None] = mapped_column(DateTime, default=None)
