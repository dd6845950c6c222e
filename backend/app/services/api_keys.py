"""API keys for the cross-subdomain email API.

Keys are high-entropy random tokens (``molo_`` + 64 hex chars), so they are
stored as an unsalted SHA-256 digest: the digest is stable across processes
and restarts, and lookup never needs a per-key salt. Comparisons go through
``hmac.compare_digest``.

Records created before hashing kept the raw key in ``email_api_keys.api_key``.
Those are still accepted (with a deprecation warning) until
``migrate_plaintext_keys`` has moved them over.
"""

import asyncio
import hashlib
import hmac
import logging
import secrets
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import select, update

from app.database import ConnectionPoolManager
from app.models.api_key import EmailApiKey

logger = logging.getLogger(__name__)

API_KEY_PREFIX = "molo_"
API_KEY_PREVIEW = "molo_****...****"


def hash_api_key(raw_key: str) -> str:
    """SHA-256 hex digest of ``raw_key``.

    Raises:
        ValueError: if ``raw_key`` is empty or not a string.
    """
    if not isinstance(raw_key, str) or not raw_key:
        raise ValueError("API key must be a non-empty string")
    return hashlib.sha256(raw_key.encode("utf-8")).hexdigest()


def verify_api_key(raw_key: str, stored_hash: str) -> bool:
    """Constant-time check of ``raw_key`` against a stored SHA-256 digest."""
    if not isinstance(stored_hash, str) or not stored_hash:
        return False
    try:
        candidate = hash_api_key(raw_key)
    except ValueError:
        return False
    return hmac.compare_digest(candidate.encode("ascii"), stored_hash.lower().encode("utf-8"))


def generate_api_key() -> str:
    """Return a fresh raw key. Only its hash may be persisted."""
    return API_KEY_PREFIX + secrets.token_hex(32)


def key_prefix(raw_key: str | None) -> str:
    """First 10 characters of a key, safe for logs."""
    return raw_key[:10] if raw_key else "none"


# ---------------------------------------------------------------------------
# Stored credential variants
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class HashedCredential:
    key_hash: str
    is_legacy = False

    def matches(self, raw_key: str) -> bool:
        return verify_api_key(raw_key, self.key_hash)


@dataclass(frozen=True)
class LegacyCredential:
    """Raw key stored before hashing. Remove once no record uses it."""

    plaintext: str
    is_legacy = True

    def matches(self, raw_key: str) -> bool:
        if not isinstance(raw_key, str) or not raw_key:
            return False
        return hmac.compare_digest(raw_key.encode("utf-8"), self.plaintext.encode("utf-8"))


StoredCredential = HashedCredential | LegacyCredential


def credential_for(key_hash: str | None, plaintext: str | None) -> StoredCredential | None:
    """Pick the credential a record authenticates with; the hash wins."""
    if key_hash:
        return HashedCredential(key_hash)
    if plaintext:
        return LegacyCredential(plaintext)
    return None


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class AuthResult:
    valid: bool
    subdomain: str | None = None
    key_id: int | None = None


_INVALID = AuthResult(valid=False)


class ApiKeyValidator:
    """Resolves an ``x-api-key`` header to the subdomain that owns it."""

    def __init__(self, pool: ConnectionPoolManager) -> None:
        self._pool = pool
        self._background: set[asyncio.Task] = set()

    async def validate(self, raw_key: str | None, origin_subdomain: str | None = None) -> AuthResult:
        """Check ``raw_key`` against every active record, first match wins.

        ``origin_subdomain`` (the ``x-subdomain`` header) replaces the stored
        subdomain on success. Every failure, including database errors, comes
        back as the same invalid result.
        """
        if not raw_key:
            logger.info("No API key in request headers")
            return _INVALID

        try:
            rows = await self._pool.execute_query(
                select(EmailApiKey.id, EmailApiKey.subdomain, EmailApiKey.key_hash, EmailApiKey.api_key)
                .where(EmailApiKey.is_active.is_(True))
                .order_by(EmailApiKey.id)
            )
        except Exception:
            logger.error(
                "API key lookup failed",
                extra={"key_prefix": key_prefix(raw_key)},
                exc_info=True,
            )
            return _INVALID

        for row in rows:
            credential = credential_for(row["key_hash"], row["api_key"])
            if credential is None or not credential.matches(raw_key):
                continue

            if credential.is_legacy:
                logger.warning(
                    "Plaintext API key used - migration recommended",
                    extra={"subdomain": row["subdomain"], "key_id": row["id"]},
                )

            self._touch_last_used(row["id"])
            subdomain = origin_subdomain or row["subdomain"]
            logger.info(
                "API key validated",
                extra={"subdomain": subdomain, "key_id": row["id"]},
            )
            return AuthResult(valid=True, subdomain=subdomain, key_id=row["id"])

        logger.warning(
            "API key validation failed - no matching key",
            extra={"key_prefix": key_prefix(raw_key), "active_keys": len(rows)},
        )
        return _INVALID

    def _touch_last_used(self, key_id: int) -> None:
        task = asyncio.create_task(self._update_last_used(key_id))
        # Keep a reference until done so the task is not garbage-collected.
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _update_last_used(self, key_id: int) -> None:
        try:
            await self._pool.execute_query(
                update(EmailApiKey)
                .where(EmailApiKey.id == key_id)
                .values(last_used_at=_utcnow())
            )
        except Exception:
            logger.warning("Failed to update last_used_at", extra={"key_id": key_id}, exc_info=True)

    async def drain(self) -> None:
        """Wait for pending ``last_used_at`` updates (shutdown and tests)."""
        if self._background:
            await asyncio.gather(*self._background, return_exceptions=True)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


# ---------------------------------------------------------------------------
# Key lifecycle
# ---------------------------------------------------------------------------


async def migrate_plaintext_keys(pool: ConnectionPoolManager) -> int:
    """Hash every plaintext-only key and clear its plaintext column.

    Runs in a single transaction; safe to re-run. Returns how many records
    were migrated.
    """

    async def _migrate(conn) -> int:
        result = await conn.execute(
            select(EmailApiKey.id, EmailApiKey.subdomain, EmailApiKey.api_key).where(
                EmailApiKey.api_key.is_not(None),
                EmailApiKey.key_hash.is_(None),
            )
        )
        pending = result.mappings().all()
        for row in pending:
            await conn.execute(
                update(EmailApiKey)
                .where(EmailApiKey.id == row["id"])
                .values(key_hash=hash_api_key(row["api_key"]), api_key=None)
            )
            logger.info("Migrated plaintext API key", extra={"key_id": row["id"], "subdomain": row["subdomain"]})
        return len(pending)

    migrated = await pool.transaction(_migrate)
    logger.info("Plaintext API key migration finished", extra={"migrated": migrated})
    return migrated


def to_public_dict(row: Any) -> dict[str, Any]:
    """Serialise a key record without any secret material."""
    return {
        "id": row["id"],
        "subdomain": row["subdomain"],
        "description": row["description"],
        "isActive": bool(row["is_active"]),
        "createdAt": row["created_at"],
        "lastUsedAt": row["last_used_at"],
        "keyPreview": API_KEY_PREVIEW,
    }
