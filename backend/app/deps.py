"""FastAPI dependency functions shared across routers.

Order matters on the email routes: ``email_rate_limit`` is declared before
``require_api_key`` so unauthenticated floods are counted and rejected
before any database lookup happens, and both run before the request body is
validated.

Rate-limit headers on allowed responses:

    X-RateLimit-Limit       Quota of the limiter picked for this form type
    X-RateLimit-Remaining   Requests left in the current window
    X-RateLimit-Reset       Seconds until the window resets
"""

import hmac
import logging
from typing import Annotated

from fastapi import Depends, Header, HTTPException, Request, Response

from app.context import EmailApiContext
from app.services.api_keys import AuthResult

logger = logging.getLogger(__name__)

INVALID_KEY_MESSAGE = "Invalid or missing API key"


def get_context(request: Request) -> EmailApiContext:
    return request.app.state.ctx


Context = Annotated[EmailApiContext, Depends(get_context)]


def client_ip(request: Request) -> str | None:
    return request.client.host if request.client else None


async def _peek_form_type(request: Request) -> str | None:
    """Best-effort read of ``formType`` from a JSON body (None if absent)."""
    try:
        body = await request.json()
    except Exception:
        return None
    if isinstance(body, dict) and isinstance(body.get("formType"), str):
        return body["formType"]
    return None


async def email_rate_limit(request: Request, response: Response, ctx: Context) -> None:
    """Apply the limiter matching the request's form type, or raise 429."""
    form_type = await _peek_form_type(request)
    limiter = ctx.limiters.select(form_type)
    decision = limiter.hit(request.headers.get("x-api-key"), client_ip(request))

    if not decision.allowed:
        retry_after = decision.retry_after
        raise HTTPException(
            status_code=429,
            detail={
                "error": "Too many email requests, please try again later.",
                "retryAfter": retry_after,
                "limiter": limiter.name,
            },
            headers={
                "Retry-After": str(retry_after),
                "X-RateLimit-Limit": str(decision.limit),
                "X-RateLimit-Remaining": "0",
                "X-RateLimit-Reset": str(retry_after),
            },
        )

    if not decision.whitelisted:
        response.headers["X-RateLimit-Limit"] = str(decision.limit)
        response.headers["X-RateLimit-Remaining"] = str(decision.remaining)
        response.headers["X-RateLimit-Reset"] = str(decision.retry_after)


async def require_api_key(
    ctx: Context,
    x_api_key: Annotated[str | None, Header()] = None,
    x_subdomain: Annotated[str | None, Header()] = None,
) -> AuthResult:
    """Resolve ``x-api-key`` to an authenticated subdomain or raise 401.

    The 401 body is identical for a missing, unknown, inactive or
    unverifiable key.
    """
    result = await ctx.validator.validate(x_api_key, x_subdomain)
    if not result.valid:
        raise HTTPException(status_code=401, detail=INVALID_KEY_MESSAGE)
    return result


def require_admin(
    ctx: Context,
    x_admin_token: Annotated[str | None, Header()] = None,
) -> None:
    """Guard admin routes with ``X-Admin-Token``; no token configured -> 401."""
    expected = ctx.settings.admin_token
    if not expected or not x_admin_token or not hmac.compare_digest(
        x_admin_token.encode("utf-8"), expected.encode("utf-8")
    ):
        logger.warning("Rejected admin request")
        raise HTTPException(status_code=401, detail="Admin authentication required")
