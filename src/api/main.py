"""Affiliate Dashboard API — FastAPI application."""
from __future__ import annotations

import logging
import traceback

from src.logging_config import setup_logging
setup_logging()
from contextlib import asynccontextmanager

from fastapi import FastAPI, Depends, HTTPException
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.requests import Request as FastAPIRequest
from fastapi.security import HTTPAuthorizationCredentials
from starlette.exceptions import HTTPException as StarletteHTTPException
from sqlalchemy import select, text
from sqlalchemy.ext.asyncio import AsyncSession

from src.db.engine import engine, get_session
from src.db.tables import Base, AdminRow
from src.errors import AppError
from config.settings import settings

# ── Sentry Error Tracking ────────────────────────
if settings.SENTRY_DSN:
    import sentry_sdk
    from sentry_sdk.integrations.fastapi import FastApiIntegration
    from sentry_sdk.integrations.sqlalchemy import SqlalchemyIntegration
    from sentry_sdk.integrations.logging import LoggingIntegration

    sentry_sdk.init(
        dsn=settings.SENTRY_DSN,
        environment=settings.SENTRY_ENVIRONMENT,
        traces_sample_rate=settings.SENTRY_TRACES_SAMPLE_RATE,
        integrations=[
            FastApiIntegration(),
            SqlalchemyIntegration(),
            LoggingIntegration(level=logging.WARNING, event_level=logging.ERROR),
        ],
        # Customer and affiliate emails flow through requests
        send_default_pii=False,
        before_send=lambda event, hint: (
            {**event, "request": {**event.get("request", {}), "cookies": None}}
            if "request" in event else event
        ),
    )

logger = logging.getLogger(__name__)

VERSION = "1.0.0"


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Validate configuration and create tables on startup."""
    from src.startup_checks import validate_settings
    validate_settings()

    # Import all tables so they're registered with Base.metadata
    import src.db.affiliate_tables  # noqa: F401
    import src.analytics.tables  # noqa: F401
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Database tables ready")

    yield

    logger.info("Shutting down — draining connections...")
    await engine.dispose()
    logger.info("Shutdown complete")


app = FastAPI(
    title="Affiliate Dashboard API",
    version=VERSION,
    description="Admin backend for a merchant affiliate program: commissions, payouts and visitor analytics",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Request ID tracing
from src.middleware.request_id import RequestIDMiddleware
app.add_middleware(RequestIDMiddleware)


# ---- Auth routes ----
from src.auth import (
    LoginRequest, bearer_scheme, create_admin_session, revoke_admin_session, verify_password,
)


@app.post("/api/v1/auth/login")
async def login(req: LoginRequest, session: AsyncSession = Depends(get_session)):
    """Log in with email + password, returns an opaque bearer token."""
    result = await session.execute(select(AdminRow).where(AdminRow.email == req.email.strip().lower()))
    admin = result.scalar_one_or_none()
    if not admin or not verify_password(req.password, admin.password_hash):
        raise HTTPException(401, "Invalid email or password")
    admin_session = await create_admin_session(session, admin)
    logger.info("Admin %s logged in", admin.id)
    return {
        "token": admin_session.token,
        "expires_at": admin_session.expires_at.isoformat(),
        "admin": {"id": admin.id, "email": admin.email, "shop_id": admin.shop_id},
    }


@app.post("/api/v1/auth/logout")
async def logout(
    creds: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
    session: AsyncSession = Depends(get_session),
):
    if not creds or not creds.credentials:
        raise HTTPException(401, "Unauthorized")
    revoked = await revoke_admin_session(session, creds.credentials)
    return {"success": True, "revoked": revoked}


# ---- Routers ----
from src.analytics.routes import router as analytics_router
app.include_router(analytics_router)
from src.api.admin import router as admin_router
app.include_router(admin_router)
from src.api.affiliate_admin import router as affiliate_admin_router
app.include_router(affiliate_admin_router)
from src.api.payouts import router as payouts_router
app.include_router(payouts_router)
from src.api.affiliate_portal import router as affiliate_portal_router
app.include_router(affiliate_portal_router)
from src.api.referrals import router as referrals_router
app.include_router(referrals_router)


@app.get("/health")
async def health(session: AsyncSession = Depends(get_session)):
    """Deep health check — validates DB connectivity."""
    try:
        await session.execute(text("SELECT 1"))
        db_status = "connected"
    except Exception:
        logger.exception("Health check: database unreachable")
        db_status = "error"
    status = "ok" if db_status == "connected" else "degraded"
    return {"status": status, "db": db_status, "version": VERSION}


# ---- Error handlers ----

@app.exception_handler(AppError)
async def app_error_handler(request: FastAPIRequest, exc: AppError):
    """Domain errors raised by the services."""
    log = logger.warning if exc.status_code >= 500 else logger.info
    log("%s on %s %s: %s", exc.code, request.method, request.url.path, exc.message)
    return JSONResponse(status_code=exc.status_code, content={
        "error": exc.code,
        "message": exc.message,
        **exc.details,
    })


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: FastAPIRequest, exc: RequestValidationError):
    """Return clean, structured validation errors instead of raw Pydantic output."""
    errors = []
    for err in exc.errors():
        field = " → ".join(str(loc) for loc in err["loc"]) if err.get("loc") else "unknown"
        errors.append({"field": field, "message": err["msg"]})
    return JSONResponse(status_code=422, content={
        "error": "validation_error",
        "message": "Invalid request data",
        "details": errors,
    })


@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request: FastAPIRequest, exc: StarletteHTTPException):
    """Consistent error envelope for all HTTP errors."""
    return JSONResponse(status_code=exc.status_code, content={
        "error": exc.detail if isinstance(exc.detail, str) else "error",
        "message": exc.detail,
    }, headers=getattr(exc, "headers", None))


@app.exception_handler(Exception)
async def unhandled_error_handler(request: FastAPIRequest, exc: Exception):
    """Catch-all for unhandled exceptions. Tracebacks only leave the server outside production."""
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    content = {"error": "internal_error", "message": str(exc) or "Internal server error"}
    if not settings.is_production:
        content["traceback"] = traceback.format_exception(type(exc), exc, exc.__traceback__)
    return JSONResponse(status_code=500, content=content)
