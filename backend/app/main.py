import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from app.core.config import settings, require_jwt_secret
from app.core.database import SessionLocal
from app.core.errors import AuthError
from app.routes.auth import router as auth_router
from app.tasks.sweepers import TokenCleanupWorker, UnverifiedAccountCleanupWorker

logger = logging.getLogger(__name__)

require_jwt_secret()


@asynccontextmanager
async def lifespan(app: FastAPI):
    workers = []
    if settings.SWEEPERS_ENABLED:
        workers = [
            TokenCleanupWorker(SessionLocal),
            UnverifiedAccountCleanupWorker(SessionLocal),
        ]
        for worker in workers:
            worker.start()
    app.state.sweepers = workers
    try:
        yield
    finally:
        for worker in workers:
            await worker.stop()


app = FastAPI(title="TradeGear Auth API", lifespan=lifespan)
logger.info(
    "Startup config: EMAIL_ENABLED=%s provider=%s RATE_LIMIT_BACKEND=%s CAPTCHA_ENABLED=%s SWEEPERS_ENABLED=%s",
    settings.EMAIL_ENABLED,
    (settings.EMAIL_PROVIDER or "resend"),
    settings.RATE_LIMIT_BACKEND,
    settings.CAPTCHA_ENABLED,
    settings.SWEEPERS_ENABLED,
)

# Status codes that reach the generic handlers (routing 404/405, framework 4xx).
_ERROR_CODE_BY_STATUS: dict[int, str] = {
    400: "BAD_REQUEST",
    401: "UNAUTHORIZED",
    403: "FORBIDDEN",
    404: "NOT_FOUND",
    405: "METHOD_NOT_ALLOWED",
    422: "VALIDATION_ERROR",
    500: "INTERNAL_ERROR",
}


def _error_response(
    status_code: int,
    error: str,
    message: str,
    details: dict | None = None,
    headers: dict[str, str] | None = None,
) -> JSONResponse:
    payload: dict = {"error": error, "message": message}
    if details:
        payload["details"] = details
    return JSONResponse(status_code=status_code, content=payload, headers=headers)


@app.exception_handler(AuthError)
def auth_error_handler(request: Request, exc: AuthError):
    if exc.status_code >= 500:
        logger.error("Auth request failed: %s %s -> %s", request.method, request.url.path, exc.code)
    return _error_response(exc.status_code, exc.code, exc.message, exc.details, exc.headers)


@app.exception_handler(StarletteHTTPException)
def http_exception_handler(request: Request, exc: StarletteHTTPException):  # noqa: ARG001
    detail = exc.detail
    message = detail if isinstance(detail, str) and detail else "Request failed"
    return _error_response(
        exc.status_code,
        _ERROR_CODE_BY_STATUS.get(exc.status_code, "HTTP_ERROR"),
        message,
        headers=getattr(exc, "headers", None),
    )


@app.exception_handler(RequestValidationError)
def validation_exception_handler(request: Request, exc: RequestValidationError):  # noqa: ARG001
    return _error_response(422, "VALIDATION_ERROR", "Invalid request payload", {"errors": _jsonable_errors(exc)})


def _jsonable_errors(exc: RequestValidationError) -> list:
    # pydantic v2 puts the raw exception in ctx for some validators
    errors = []
    for err in exc.errors():
        err = dict(err)
        ctx = err.get("ctx")
        if isinstance(ctx, dict):
            err["ctx"] = {k: str(v) for k, v in ctx.items()}
        errors.append(err)
    return errors


app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(auth_router)


@app.get("/health", include_in_schema=False)
def health_check():
    return {"status": "ok"}
