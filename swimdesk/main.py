# swimdesk/main.py - FastAPI application for swim school billing
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from contextlib import asynccontextmanager
import logging
import traceback
import time

from swimdesk.core.config import settings
from swimdesk.core.db import get_engine, health_check as db_health_check
from swimdesk.models.base import Base
from swimdesk.billing.errors import BillingError, ErrorKind
from swimdesk.api.routers import counter, families, invoices, payments


# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL, logging.INFO),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

ERROR_STATUS = {
    ErrorKind.INVALID_AMOUNT: 400,
    ErrorKind.ALLOCATION_MISMATCH: 400,
    ErrorKind.ALLOCATION_EXCEEDS_BALANCE: 400,
    ErrorKind.AMOUNT_MISMATCH: 400,
    ErrorKind.NON_INTEGER_QUANTITY: 400,
    ErrorKind.INVALID_TARGET: 400,
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.ALREADY_UNDONE: 409,
    ErrorKind.PERSISTENCE_FAILED: 503,
}


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info(f"SwimDesk billing starting (env={settings.ENV})")
    engine = get_engine()

    # Migrations own the schema outside dev
    if settings.is_development:
        try:
            Base.metadata.create_all(bind=engine)
            logger.info("Dev schema ensured")
        except Exception as e:
            logger.error(f"Could not create dev schema: {e}")

    yield

    logger.info("SwimDesk billing stopped")


app = FastAPI(
    title=settings.API_TITLE,
    description="Payments, invoice allocation and class entitlements for a swim school",
    version=settings.API_VERSION,
    docs_url="/docs" if settings.is_development else None,
    redoc_url="/redoc" if settings.is_development else None,
    lifespan=lifespan
)


@app.middleware("http")
async def log_requests(request: Request, call_next):
    started = time.time()
    try:
        response = await call_next(request)
    except Exception as e:
        logger.error(f"{request.method} {request.url.path} failed: {e}")
        raise
    elapsed = time.time() - started
    logger.info(f"{request.method} {request.url.path} -> {response.status_code} ({elapsed:.3f}s)")
    return response


app.add_middleware(CORSMiddleware, **settings.get_cors_config())


@app.exception_handler(BillingError)
async def billing_error_handler(request: Request, exc: BillingError):
    """Billing failures carry a stable error kind the UI can switch on"""
    status_code = ERROR_STATUS.get(exc.kind, 400)
    if status_code >= 500:
        logger.error(f"Billing error on {request.method} {request.url.path}: {exc.kind.value} {exc.message}")
    else:
        logger.warning(f"Rejected {request.method} {request.url.path}: {exc.kind.value} {exc.message}")

    content = {"detail": exc.message, "error": exc.kind.value}
    if exc.invoice_id is not None:
        content["invoice_id"] = str(exc.invoice_id)
    return JSONResponse(status_code=status_code, content=content)


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Handle uncaught exceptions"""
    logger.error(f"Unhandled exception on {request.method} {request.url.path}")
    logger.error(f"   Exception: {str(exc)}")
    logger.error(traceback.format_exc())

    if settings.is_development and settings.DEBUG:
        return JSONResponse(
            status_code=500,
            content={"detail": str(exc), "traceback": traceback.format_exc()}
        )
    return JSONResponse(status_code=500, content={"detail": "Internal server error"})


@app.get("/health")
async def health_check():
    database = db_health_check()
    return {
        "status": "healthy" if database.get("status") == "healthy" else "degraded",
        "environment": settings.ENV,
        "version": settings.API_VERSION,
        "database": database,
    }


app.include_router(families.router, prefix="/api/families", tags=["Families"])
app.include_router(invoices.router, prefix="/api/invoices", tags=["Invoices"])
app.include_router(payments.router, prefix="/api/payments", tags=["Payments"])
app.include_router(counter.router, prefix="/api/counter", tags=["Counter Sales"])
