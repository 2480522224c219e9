"""
examhub/main.py
FastAPI application: exam attempts, enrollments and the seat ledger
"""
import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from sqlalchemy.exc import DBAPIError
from starlette.exceptions import HTTPException as StarletteHTTPException

from examhub import __version__
from examhub.config.settings import settings
from examhub.database import AsyncSessionLocal, close_db, init_db
from examhub.errors import APIError, ErrorCode, ServiceUnavailableError, get_error_summary, new_log_id
from examhub.rate_limit import limiter
from examhub.routes import router
from examhub.services.attempt_service import AttemptConflictError
from examhub.tasks.expiry_sweep import start_sweep_task

logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    handlers=[logging.StreamHandler()]
)

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Starting application...")
    logger.info(f"Settings: {settings.summary()}")

    try:
        await init_db()
        logger.info("Database connected successfully")
    except Exception as e:
        logger.error(f"Failed to connect to database: {str(e)}")
        raise

    sweep_task = None
    if settings.EXPIRY_SWEEP_ENABLED:
        sweep_task = start_sweep_task(AsyncSessionLocal, settings.EXPIRY_SWEEP_INTERVAL_SECONDS)
        logger.info("Expiry sweep enabled")

    yield

    logger.info("Shutting down application...")
    if sweep_task:
        sweep_task.cancel()
        try:
            await sweep_task
        except asyncio.CancelledError:
            pass

    try:
        await close_db()
    except Exception as e:
        logger.error(f"Error closing database connection: {str(e)}")


app = FastAPI(
    title="ExamHub Engine API",
    description="Exam attempts, enrollments and purchased-seat ledger",
    version=__version__,
    docs_url="/docs" if settings.is_development() else None,
    redoc_url="/redoc" if settings.is_development() else None,
    lifespan=lifespan
)

# Attach rate limiter to the app
app.state.limiter = limiter

origins = [
    "http://localhost:3000",
    "http://localhost:5173",
    "http://127.0.0.1:3000",
    "http://127.0.0.1:5173",
]
origins.extend(settings.ALLOWED_ORIGINS)

app.add_middleware(
    CORSMiddleware,
    allow_origins=origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "OPTIONS"],
    allow_headers=["*"],
)


# ============================================
# Exception handlers
# ============================================

@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    logger.warning(f"Validation error on {request.url.path}: {exc.errors()}")

    error_details = []
    for error in exc.errors():
        error_details.append({
            "loc": error.get("loc"),
            "msg": error.get("msg"),
            "type": error.get("type")
        })

    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content={
            "success": False,
            "error": "Validation Error",
            "message": "Request validation failed",
            "code": ErrorCode.VALIDATION_ERROR,
            "details": {"errors": error_details}
        }
    )


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    logger.warning(f"HTTP exception on {request.url.path}: {exc.detail}")

    if isinstance(exc.detail, dict):
        return JSONResponse(status_code=exc.status_code, content=exc.detail, headers=exc.headers)

    if exc.status_code == status.HTTP_401_UNAUTHORIZED:
        code = ErrorCode.AUTH_REQUIRED
    elif exc.status_code == status.HTTP_404_NOT_FOUND:
        code = ErrorCode.NOT_FOUND
    elif exc.status_code >= 500:
        code = ErrorCode.INTERNAL_ERROR
    else:
        code = ErrorCode.INVALID_INPUT

    return JSONResponse(
        status_code=exc.status_code,
        content={
            "success": False,
            "error": "Error",
            "message": str(exc.detail),
            "code": code
        },
        headers=exc.headers
    )


@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded):
    logger.warning(f"Rate limit exceeded on {request.url.path}: {exc.detail}")
    return APIError(
        status_code=status.HTTP_429_TOO_MANY_REQUESTS,
        error="Too Many Requests",
        message=f"Rate limit exceeded: {exc.detail}",
        code=ErrorCode.RATE_LIMITED
    ).to_response()


@app.exception_handler(APIError)
async def api_error_handler(request: Request, exc: APIError):
    logger.info(f"API error on {request.url.path}: {exc.code} - {exc.message}")
    return exc.to_response()


@app.exception_handler(AttemptConflictError)
async def attempt_conflict_handler(request: Request, exc: AttemptConflictError):
    logger.warning(f"Attempt contention on {request.url.path}: {str(exc)}")
    return APIError(
        status_code=status.HTTP_409_CONFLICT,
        error="Conflict",
        message="The attempt is being modified concurrently, please retry",
        code=ErrorCode.CONCURRENT_MODIFICATION
    ).to_response()


@app.exception_handler(DBAPIError)
async def datastore_error_handler(request: Request, exc: DBAPIError):
    log_id = new_log_id()
    logger.error(f"[{log_id}] Datastore error on {request.url.path}: {type(exc.orig).__name__}: {str(exc.orig)}")
    return ServiceUnavailableError(log_id=log_id).to_response()


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    log_id = new_log_id()
    logger.error(f"[{log_id}] Unhandled exception on {request.url.path}: {type(exc).__name__}: {str(exc)}")
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={
            "success": False,
            "error": "Internal Error",
            "message": "An unexpected error occurred. Please try again later.",
            "code": ErrorCode.INTERNAL_ERROR,
            "details": {"log_id": log_id}
        }
    )


# ============================================
# Health
# ============================================

@app.get("/health", tags=["Health"])
async def health_check():
    return {
        "status": "healthy",
        "version": __version__,
        **settings.summary(),
    }


@app.get("/api/errors/health", tags=["Health"])
async def error_handling_health():
    return get_error_summary()


app.include_router(router)


if __name__ == "__main__":
    import os
    import uvicorn

    host = os.getenv("HOST", "0.0.0.0")
    port = int(os.getenv("PORT", 8000))

    logger.info(f"Starting server on {host}:{port}")
    uvicorn.run(
        "examhub.main:app",
        host=host,
        port=port,
        reload=settings.is_development(),
        log_level="info"
    )
