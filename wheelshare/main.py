import logging

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .core.config import get_settings
from .core.errors import (
    AlreadyExists,
    NotFound,
    SerializationFailed,
    StorageError,
    StorageUnavailable,
    Unauthorized,
    ValidationFailed,
)
from .core.request_context import AuthorizationError
from .core.responses import ErrorCodes, error_response
from .identity import AuthError, TokenValidator
from .rate_limiter import RateLimitExceeded, RateLimitHeadersMiddleware
from .routes_public import router as public_router
from .routes_shares import router as shares_router
from .routes_wheel import router as wheel_router
from .storage import build_storage

settings = get_settings()
logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(title="Annual Wheel Sharing API")

app.add_middleware(RateLimitHeadersMiddleware)
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.allowed_origins_list or ["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(shares_router)
app.include_router(public_router)
app.include_router(wheel_router)


# ────────────────────────────────────────────────────────────────
# Error Handlers
# ────────────────────────────────────────────────────────────────

_STORAGE_ERROR_STATUS = [
    (NotFound, status.HTTP_404_NOT_FOUND, ErrorCodes.NOT_FOUND),
    (AlreadyExists, status.HTTP_409_CONFLICT, ErrorCodes.ALREADY_EXISTS),
    (Unauthorized, status.HTTP_403_FORBIDDEN, ErrorCodes.AUTHORIZATION_DENIED),
    (ValidationFailed, status.HTTP_422_UNPROCESSABLE_ENTITY, ErrorCodes.VALIDATION_ERROR),
    (StorageUnavailable, status.HTTP_503_SERVICE_UNAVAILABLE, ErrorCodes.STORAGE_UNAVAILABLE),
    (SerializationFailed, status.HTTP_500_INTERNAL_SERVER_ERROR, ErrorCodes.SERIALIZATION_ERROR),
]


@app.exception_handler(StorageError)
async def storage_error_handler(request: Request, exc: StorageError):
    for error_type, status_code, code in _STORAGE_ERROR_STATUS:
        if isinstance(exc, error_type):
            break
    else:
        status_code, code = status.HTTP_500_INTERNAL_SERVER_ERROR, ErrorCodes.INTERNAL_ERROR

    message = exc.message
    if status_code >= 500:
        logger.error(f"[STORAGE] {request.method} {request.url.path} failed: {exc!r}")
        # Backend detail stays in the logs
        message = "Storage is temporarily unavailable" if status_code == 503 else "Stored data could not be read"
    return JSONResponse(status_code=status_code, content=error_response(code, message))


@app.exception_handler(AuthError)
async def auth_error_handler(request: Request, exc: AuthError):
    logger.warning(f"[AUTH] {request.method} {request.url.path}: {type(exc).__name__}: {exc.message}")
    return JSONResponse(
        status_code=status.HTTP_401_UNAUTHORIZED,
        content=error_response(exc.code, exc.message),
        headers={"WWW-Authenticate": "Bearer"},
    )


@app.exception_handler(AuthorizationError)
async def authorization_error_handler(request: Request, exc: AuthorizationError):
    return JSONResponse(
        status_code=status.HTTP_403_FORBIDDEN,
        content=error_response(ErrorCodes.INSUFFICIENT_ROLE, exc.message),
    )


@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded):
    return JSONResponse(
        status_code=status.HTTP_429_TOO_MANY_REQUESTS,
        content=error_response(
            ErrorCodes.RATE_LIMITED,
            str(exc),
            {"retry_after": exc.retry_after, "limit": exc.limit, "window_seconds": exc.window_seconds},
        ),
        headers=exc.headers,
    )


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    errors = [
        {"loc": list(err.get("loc", [])), "msg": err.get("msg", "")}
        for err in exc.errors()
    ]
    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content=error_response(ErrorCodes.VALIDATION_ERROR, "Request validation failed", {"errors": errors}),
    )


# ────────────────────────────────────────────────────────────────
# Lifecycle
# ────────────────────────────────────────────────────────────────

@app.on_event("startup")
async def on_startup():
    app.state.settings = settings
    app.state.storage = await build_storage(settings)
    app.state.token_validator = TokenValidator.from_settings(settings)
    if not settings.auth_client_id:
        logger.warning("[AUTH] AUTH_CLIENT_ID is not set; every authenticated request will be rejected")
    logger.info(f"Annual Wheel API started with {settings.storage_display_name}, base URL {settings.base_url}")


@app.on_event("shutdown")
async def on_shutdown():
    await app.state.token_validator.aclose()
    await app.state.storage.close()


@app.get("/health")
async def health(request: Request):
    storage = getattr(request.app.state, "storage", None)
    return {"status": "ok", "storage": storage.backend if storage else None}
