import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from app.logging_config import RequestIdMiddleware, configure_logging
from app.config import Settings, settings as default_settings
from app.context import EmailApiContext
from app.api.admin_email import router as admin_email_router
from app.api.admin_keys import router as admin_keys_router
from app.api.email import router as email_router

logger = logging.getLogger(__name__)


async def _http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    # dict details carry extra fields (e.g. retryAfter) next to "error"
    if isinstance(exc.detail, dict):
        content = {"success": False, **exc.detail}
    else:
        content = {"success": False, "error": exc.detail}
    return JSONResponse(status_code=exc.status_code, content=content, headers=exc.headers)


async def _validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    return JSONResponse(
        status_code=400,
        content={
            "success": False,
            "error": "Validation error",
            "details": jsonable_encoder(exc.errors(), exclude={"input", "ctx"}),
        },
    )


async def _unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse(status_code=500, content={"success": False, "error": "Internal server error"})


def create_app(settings: Settings | None = None, context: EmailApiContext | None = None) -> FastAPI:
    """Build an application with its own pool, limiters and email service."""
    settings = settings or default_settings
    configure_logging(level=settings.log_level)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        ctx = context or EmailApiContext(settings)
        logger.info("Application starting up")
        await ctx.init()
        app.state.ctx = ctx
        yield
        logger.info("Application shutting down")
        await ctx.shutdown()

    app = FastAPI(title="MOLOCHAIN Email API", lifespan=lifespan)

    # Request ID middleware must be added BEFORE CORS so every response carries
    # the X-Request-ID header (including preflight OPTIONS responses).
    app.add_middleware(RequestIdMiddleware)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=[settings.frontend_url],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*", "X-Request-ID", "X-API-Key", "X-Subdomain"],
        expose_headers=["X-Request-ID", "Retry-After", "X-RateLimit-Limit", "X-RateLimit-Remaining", "X-RateLimit-Reset"],
    )

    app.add_exception_handler(StarletteHTTPException, _http_exception_handler)
    app.add_exception_handler(RequestValidationError, _validation_exception_handler)
    app.add_exception_handler(Exception, _unhandled_exception_handler)

    app.include_router(email_router)
    app.include_router(admin_keys_router)
    app.include_router(admin_email_router)

    @app.get("/api/health")
    async def health():
        return {"status": "ok"}

    return app


app = create_app()
