import logging
import uuid

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import ValidationError

from docsite_ingest.core.config import settings
from docsite_ingest.core.errors import ConfigurationError, JobNotFoundError, JobStateError
from docsite_ingest.routers import jobs, pages

logger = logging.getLogger(__name__)

app = FastAPI(title="docsite-ingest", version="0.1.0")

# ---------------------------------------------------------------------------
# Middleware: request-id injection
# ---------------------------------------------------------------------------


@app.middleware("http")
async def add_request_id(request: Request, call_next):
    request_id = str(uuid.uuid4())
    request.state.request_id = request_id
    response = await call_next(request)
    response.headers["X-Request-ID"] = request_id
    return response


# ---------------------------------------------------------------------------
# Global exception handlers
# ---------------------------------------------------------------------------


def _request_id(request: Request) -> str:
    return getattr(request.state, "request_id", "unknown")


def _error(request: Request, status_code: int, error: str, message: str, detail=None):
    return JSONResponse(
        status_code=status_code,
        content={
            "error": error,
            "message": message,
            "detail": detail,
            "request_id": _request_id(request),
        },
    )


@app.exception_handler(RequestValidationError)
async def request_validation_error_handler(request: Request, exc: RequestValidationError):
    return _error(request, 422, "validation_error", "Request validation failed", exc.errors())


@app.exception_handler(ValidationError)
async def validation_error_handler(request: Request, exc: ValidationError):
    return _error(request, 422, "validation_error", "Request validation failed", exc.errors())


@app.exception_handler(JobNotFoundError)
async def job_not_found_handler(request: Request, exc: JobNotFoundError):
    return _error(request, 404, "not_found", str(exc), {"job_id": exc.job_id})


@app.exception_handler(JobStateError)
async def job_state_error_handler(request: Request, exc: JobStateError):
    return _error(
        request, 409, "invalid_state", str(exc), {"job_id": exc.job_id, "status": exc.status}
    )


@app.exception_handler(ConfigurationError)
async def configuration_error_handler(request: Request, exc: ConfigurationError):
    return _error(request, 400, "configuration_error", str(exc))


@app.exception_handler(ValueError)
async def value_error_handler(request: Request, exc: ValueError):
    return _error(request, 400, "bad_request", str(exc))


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException):
    return _error(request, exc.status_code, "http_error", str(exc.detail))


@app.exception_handler(Exception)
async def general_exception_handler(request: Request, exc: Exception):
    logger.exception("Unhandled exception", extra={"request_id": _request_id(request)})
    return _error(
        request,
        500,
        "internal_error",
        "An unexpected error occurred",
        str(exc) if settings.DEBUG else None,
    )


# ---------------------------------------------------------------------------
# Routes
# ---------------------------------------------------------------------------


@app.get("/health")
async def health():
    return {"status": "healthy", "service": "docsite-ingest", "version": "0.1.0"}


app.include_router(jobs.router)
app.include_router(pages.router)
