from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from fastapi.exceptions import RequestValidationError
from slowapi import Limiter
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from slowapi.util import get_remote_address
from starlette.exceptions import HTTPException as StarletteHTTPException
import sentry_sdk
import logging
from foldly.config import settings
from foldly.api.v1 import files, folders, links, permissions, uploads, users, workspace
from foldly.common.response import fail, from_error
from foldly.core.errors import ErrorKind, FoldlyError
from foldly.core.monitoring import setup_logging, PerformanceMiddleware
from foldly.core.security import decode_token

setup_logging()
logger = logging.getLogger(__name__)

if settings.SENTRY_DSN:
    sentry_sdk.init(
        dsn=settings.SENTRY_DSN,
        environment=settings.ENVIRONMENT,
        traces_sample_rate=1.0 if settings.ENVIRONMENT == "development" else 0.1,
    )

def _caller(request: Request) -> str | None:
    auth = request.headers.get("authorization", "")
    if auth.lower().startswith("bearer "):
        payload = decode_token(auth[7:])
        if payload and payload.get("sub"):
            return str(payload["sub"])
    return None

def rate_limit_key(request: Request) -> str:
    """Per user when signed in, per client address otherwise"""
    user_id = _caller(request)
    return f"user:{user_id}" if user_id else get_remote_address(request)

limiter = Limiter(key_func=rate_limit_key, default_limits=[f"{settings.RATE_LIMIT_PER_MINUTE}/minute"])

app = FastAPI(
    title=settings.APP_NAME,
    version=settings.APP_VERSION,
    description="Foldly - collect files from anyone through shareable folder links.",
    docs_url="/docs" if settings.DEBUG else None,
    redoc_url="/redoc" if settings.DEBUG else None,
)

app.state.limiter = limiter

@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded):
    retry_after = int(exc.limit.limit.get_expiry())
    logger.warning(f"Rate limit hit on {request.method} {request.url.path} by {rate_limit_key(request)}")
    response = fail(
        ErrorKind.RATE_LIMITED,
        "Too many requests, slow down",
        status_code=status.HTTP_429_TOO_MANY_REQUESTS,
        blocked=True,
        retry_after=retry_after,
    )
    response.headers["Retry-After"] = str(retry_after)
    return response

@app.exception_handler(FoldlyError)
async def foldly_exception_handler(request: Request, exc: FoldlyError):
    return from_error(exc)

HTTP_ERROR_KINDS = {
    401: ErrorKind.UNAUTHORIZED,
    403: ErrorKind.UNAUTHORIZED,
    404: ErrorKind.NOT_FOUND,
    405: ErrorKind.INVALID_INPUT,
}

@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    # Framework-raised errors (missing bearer token, unknown route) share the envelope
    kind = HTTP_ERROR_KINDS.get(exc.status_code, ErrorKind.INTERNAL)
    response = fail(kind, str(exc.detail), status_code=exc.status_code)
    if exc.headers:
        response.headers.update(exc.headers)
    return response

@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    errors = [{"loc": list(e.get("loc", [])), "msg": e.get("msg"), "type": e.get("type")} for e in exc.errors()]
    return fail(
        ErrorKind.INVALID_INPUT,
        "Request validation failed",
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        details={"errors": errors},
    )

@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.error(
        f"Unhandled error in {request.method} {request.url.path}: {exc}",
        exc_info=True,
        extra={"operation": request.url.path, "actor": _caller(request) or "anonymous"},
    )
    return fail(ErrorKind.INTERNAL, "Internal server error", status_code=status.HTTP_500_INTERNAL_SERVER_ERROR)

app.add_middleware(SlowAPIMiddleware)

# CORS Middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Host header pinning outside dev and test
if settings.ENVIRONMENT == "production":
    app.add_middleware(TrustedHostMiddleware, allowed_hosts=["*.foldly.com", "foldly.com"])

app.add_middleware(PerformanceMiddleware)

@app.get("/health")
async def health_check():
    return {
        "status": "healthy",
        "app": settings.APP_NAME,
        "version": settings.APP_VERSION,
        "environment": settings.ENVIRONMENT
    }

app.include_router(users.router, prefix=f"{settings.API_V1_PREFIX}/users", tags=["Users"])
app.include_router(workspace.router, prefix=f"{settings.API_V1_PREFIX}/workspace", tags=["Workspace"])
app.include_router(folders.router, prefix=f"{settings.API_V1_PREFIX}/folders", tags=["Folders"])
app.include_router(files.router, prefix=f"{settings.API_V1_PREFIX}/files", tags=["Files"])
app.include_router(links.router, prefix=f"{settings.API_V1_PREFIX}/links", tags=["Links"])
app.include_router(
    permissions.router,
    prefix=f"{settings.API_V1_PREFIX}/links/{{link_id}}/permissions",
    tags=["Permissions"],
)
app.include_router(uploads.router, prefix=f"{settings.API_V1_PREFIX}/u", tags=["Public uploads"])

