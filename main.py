import logging
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from contextlib import asynccontextmanager

from app.core.config import settings
from app.core.credential_vault import CredentialVault
from app.core.database import init_db, utcnow
from app.core.exceptions import (
    AlreadyVerifiedError,
    AttemptsExceededError,
    AuthenticationRequired,
    ConflictError,
    DecryptionError,
    EncryptionError,
    ExpiredError,
    InvalidCredentialsError,
    LockedAccountError,
    NotFoundError,
    RateLimitExceeded,
    SecurityError,
    ValidationError,
)
from app.core.logging_config import setup_logging
from app.core.rate_limiter import RateLimiter, build_counter_store
from app.core.two_factor import TwoFactorAuth
from app.api.endpoints import auth, health, security, verification
from app.services.email_service import EmailService
from app.services.sms_service import SmsService
from app.tasks.email_tasks import QueuedEmailSender

setup_logging(log_level=settings.LOG_LEVEL, json_logs=settings.JSON_LOGS)
logger = logging.getLogger(__name__)

ERROR_STATUS = {
    ValidationError: 400,
    ExpiredError: 400,
    AlreadyVerifiedError: 400,
    AttemptsExceededError: 400,
    InvalidCredentialsError: 401,
    AuthenticationRequired: 401,
    NotFoundError: 404,
    ConflictError: 409,
    LockedAccountError: 423,
    RateLimitExceeded: 429,
    EncryptionError: 500,
    DecryptionError: 500,
}


def status_for(exc: SecurityError) -> int:
    for cls in type(exc).__mro__:
        if cls in ERROR_STATUS:
            return ERROR_STATUS[cls]
    return 400


def build_components(state) -> None:
    """Create the long-lived security components and attach them to app.state."""
    clock = utcnow
    state.clock = clock
    state.vault = CredentialVault(settings.ENCRYPTION_KEY, iterations=settings.PASSWORD_HASH_ITERATIONS)
    state.rate_limiter = RateLimiter(
        build_counter_store(settings.RATE_LIMIT_BACKEND, settings.REDIS_URL, clock=clock),
        clock=clock,
    )
    state.two_factor = TwoFactorAuth(issuer=settings.TOTP_ISSUER)
    # Real mail goes through Celery so SES latency stays off the request path
    state.email_sender = QueuedEmailSender() if settings.EMAIL_DELIVERY_MODE == "ses" else EmailService()
    state.sms_sender = SmsService()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Lifespan context manager for startup and shutdown events.
    """
    # Startup
    logger.info(f"Starting up {settings.PROJECT_NAME}...")
    init_db()
    build_components(app.state)
    logger.info(f"Security components ready (rate limiter backend: {settings.RATE_LIMIT_BACKEND})")

    yield

    # Shutdown
    logger.info(f"Shutting down {settings.PROJECT_NAME}...")


# Create FastAPI application
app = FastAPI(
    title=settings.PROJECT_NAME,
    version="1.0.0",
    description="Account security API for the Naggery journaling app",
    lifespan=lifespan
)

# Configure CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.BACKEND_CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(SecurityError)
async def security_error_handler(request: Request, exc: SecurityError):
    status_code = status_for(exc)
    headers = {}
    if isinstance(exc, (RateLimitExceeded, LockedAccountError)):
        headers["Retry-After"] = str(exc.retry_after)
    if status_code >= 500:
        logger.error(f"{type(exc).__name__} on {request.method} {request.url.path}: {exc.message}")
    return JSONResponse(status_code=status_code, content={"detail": exc.message}, headers=headers)


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    errors = [
        {"field": ".".join(str(part) for part in err.get("loc", ())[1:]), "message": err.get("msg")}
        for err in exc.errors()
    ]
    return JSONResponse(status_code=400, content={"detail": "Invalid request", "errors": errors})


# Include routers
app.include_router(health.router)
app.include_router(auth.router, prefix=settings.API_V1_STR)
app.include_router(verification.router, prefix=settings.API_V1_STR)
app.include_router(security.router, prefix=settings.API_V1_STR)


@app.get("/")
async def root():
    return {
        "message": settings.PROJECT_NAME,
        "version": "1.0.0",
        "status": "healthy"
    }


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "main:app",
        host="0.0.0.0",
        port=8000,
        reload=True,  # Enable auto-reload during development
        log_level="info"
    )
