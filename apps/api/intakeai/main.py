"""FastAPI application entry point."""
import logging

from fastapi import Depends, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from intakeai.core.config import settings
from intakeai.core.deps import FORM_ACCESS_HEADER, get_db
from intakeai.core.exceptions import IntakeCoreError
from intakeai.core.structured_logging import build_log_context, configure_logging

configure_logging()
logger = logging.getLogger(__name__)

# ============================================================================
# Sentry Integration (optional, for production error tracking)
# ============================================================================

if settings.SENTRY_DSN and settings.ENV != "dev":
    import sentry_sdk
    from sentry_sdk.integrations.fastapi import FastApiIntegration
    from sentry_sdk.integrations.sqlalchemy import SqlalchemyIntegration

    sentry_sdk.init(
        dsn=settings.SENTRY_DSN,
        environment=settings.ENV,
        integrations=[
            FastApiIntegration(transaction_style="endpoint"),
            SqlalchemyIntegration(),
        ],
        traces_sample_rate=0.1,
        send_default_pii=False,  # Intake data is PHI
    )
    logger.info("Sentry initialized for error tracking")

# ============================================================================
# Rate Limiting
# ============================================================================

from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from intakeai.core.rate_limit import limiter

# ============================================================================
# FastAPI App
# ============================================================================

app = FastAPI(
    title="Intake AI API",
    description="Patient intake links, red-flag detection and AI summaries",
    version=settings.VERSION,
    docs_url="/docs" if settings.ENV == "dev" else None,
    redoc_url="/redoc" if settings.ENV == "dev" else None,
)

app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

# CORS middleware - must be added before routers
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins_list,
    allow_credentials=True,  # Required for cookies
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization", FORM_ACCESS_HEADER],
)

# ============================================================================
# Error Handlers
# ============================================================================


def _request_context(request: Request, reason: str | None = None) -> dict:
    return build_log_context(route=request.url.path, method=request.method, reason=reason)


@app.exception_handler(IntakeCoreError)
async def intake_error_handler(request: Request, exc: IntakeCoreError):
    # Internal reason is logged only; the body carries the public code/message.
    level = logging.ERROR if exc.status_code >= 500 else logging.INFO
    logger.log(level, "Request failed: %s", exc.code, extra=_request_context(request, exc.reason))
    return JSONResponse(status_code=exc.status_code, content=exc.to_payload())


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    errors = [
        {
            "field": ".".join(str(part) for part in error["loc"] if part != "body"),
            "message": error["msg"],
        }
        for error in exc.errors()
    ]
    return JSONResponse(
        status_code=422,
        content={
            "code": "VALIDATION_ERROR",
            "message": "The submitted data is invalid.",
            "errors": errors,
        },
    )


@app.exception_handler(SQLAlchemyError)
async def database_error_handler(request: Request, exc: SQLAlchemyError):
    logger.error(
        "Database error: %s",
        exc.__class__.__name__,
        extra=_request_context(request, "database_error"),
    )
    return JSONResponse(status_code=500, content=IntakeCoreError().to_payload())


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    logger.exception("Unhandled error", extra=_request_context(request, "unhandled"))
    return JSONResponse(status_code=500, content=IntakeCoreError().to_payload())


# ============================================================================
# Routers
# ============================================================================

from intakeai.routers import intake_links, intakes, summaries

app.include_router(intake_links.router)
app.include_router(intakes.router)
app.include_router(summaries.router)


# ============================================================================
# Health Check
# ============================================================================

@app.get("/health")
def health(db: Session = Depends(get_db)):
    """
    Health check endpoint.

    Verifies database connectivity and returns environment info.
    """
    db.execute(text("SELECT 1"))
    return {"status": "ok", "env": settings.ENV, "version": settings.VERSION}
