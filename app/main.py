from contextlib import asynccontextmanager
import logging

from fastapi import FastAPI, Request, Depends
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.api.v1.router import api_router
from app.core.exceptions import InventoryError
from app.database import init_db, get_db
from app.schemas.response import ErrorResponse, ErrorDetail


logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan handler.

    Startup:
    - Create missing tables
    """
    # Startup
    logger.info(f"Starting {settings.APP_NAME} v{settings.APP_VERSION}")
    await init_db()

    yield

    # Shutdown
    logger.info(f"Shutting down {settings.APP_NAME}")


API_DESCRIPTION = """
## Branch Inventory Ledger

Per-branch stock balances backed by an append-only movement ledger,
branch-to-branch transfers (PENDING → IN_TRANSIT → RECEIVED, or CANCELLED),
open bags sold by weight, and physical count reconciliation.

### Envelope

Every response is `{"success": bool, "data": ..., "message": ...}`. Lists add
`pagination`. Errors carry `error.code`; rejected operations return the
current state of the entity in `data`.

### Error Codes

| Code | HTTP | Description |
|------|------|-------------|
| VALIDATION_ERROR | 400 | Missing or malformed input |
| NOT_FOUND | 404 | Unknown branch, product, transfer, item or bag |
| INSUFFICIENT_STOCK | 409 | Deduction would go below zero |
| INVALID_STATE_TRANSITION | 409 | Action not allowed in the current status |
| CONCURRENCY_CONFLICT | 409 | Balance changed concurrently, retry |
| COMPENSATION_FAILURE | 500 | Cancelled transfer stock not restored, retry |

The acting user id is taken from the `X-User-Id` header.
"""

# Create FastAPI application
app = FastAPI(
    title=settings.APP_NAME,
    version=settings.APP_VERSION,
    description=API_DESCRIPTION,
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
)

# Add CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include API router
app.include_router(api_router)


@app.exception_handler(InventoryError)
async def inventory_exception_handler(request: Request, exc: InventoryError):
    """Render domain errors in the response envelope."""
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path}: {exc.code} {exc.message}")
    else:
        logger.info(f"{request.method} {request.url.path} rejected: {exc.code} {exc.message}")

    body = ErrorResponse(
        error=ErrorDetail(**exc.to_dict()),
        data=exc.current_state,
    )
    return JSONResponse(status_code=exc.status_code, content=jsonable_encoder(body))


@app.exception_handler(RequestValidationError)
async def request_validation_exception_handler(request: Request, exc: RequestValidationError):
    """Malformed request bodies and parameters use the same envelope as domain validation."""
    body = ErrorResponse(
        error=ErrorDetail(
            code="VALIDATION_ERROR",
            message="Invalid request",
            details={"errors": jsonable_encoder(exc.errors())},
        ),
    )
    return JSONResponse(status_code=400, content=jsonable_encoder(body))


# Global exception handler
@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Log unexpected errors and return a generic envelope."""
    logger.exception(f"Unhandled error on {request.method} {request.url.path}")
    body = ErrorResponse(
        error=ErrorDetail(
            code="INTERNAL_ERROR",
            message=str(exc) if settings.DEBUG else "Internal server error",
            details={"type": type(exc).__name__},
        ),
    )
    return JSONResponse(status_code=500, content=jsonable_encoder(body))


# Health check endpoint
@app.get("/health", tags=["Health"])
async def health_check(db: AsyncSession = Depends(get_db)):
    """Health check endpoint with database validation."""
    from datetime import datetime, timezone

    health_status = {
        "status": "healthy",
        "app": settings.APP_NAME,
        "version": settings.APP_VERSION,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "checks": {
            "database": "unknown"
        }
    }

    # Check database connectivity
    try:
        result = await db.execute(text("SELECT 1"))
        result.scalar()
        health_status["checks"]["database"] = "connected"
    except Exception as e:
        logger.error(f"Health check failed: {e}")
        health_status["status"] = "unhealthy"
        health_status["checks"]["database"] = f"error: {str(e)}"

    # Return 503 if unhealthy
    if health_status["status"] == "unhealthy":
        return JSONResponse(status_code=503, content=health_status)

    return health_status


@app.get("/", tags=["Root"])
async def root():
    """Root endpoint."""
    return {
        "message": f"Welcome to {settings.APP_NAME}",
        "version": settings.APP_VERSION,
        "docs": "/docs",
        "redoc": "/redoc",
    }
