import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from app.config import settings
from app.core.logging import setup_logging
from app.core.exceptions import api_exception_handler, general_exception_handler, APIError
from app.core.middleware import session_validation_middleware, request_logging_middleware
from app.database import DatabasePool, apply_schema
from app.tasks.jobs import build_scheduler

# Initialize logging
setup_logging()

logger = logging.getLogger(__name__)

scheduler = build_scheduler()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Manage application lifecycle - startup and shutdown"""
    # Startup: database pool and periodic jobs
    await DatabasePool.create_pool()
    if settings.db_apply_schema:
        await apply_schema()
    if settings.scheduler_enabled:
        scheduler.start()

    yield

    # Shutdown
    await scheduler.stop()
    await DatabasePool.close_pool()


app = FastAPI(
    title="MainEvents Tickets API",
    description="Ticket sales, payment settlement, transfers and venue check-in",
    version="1.0.0",
    debug=settings.debug,
    docs_url="/docs",
    redirect_slashes=True,
    lifespan=lifespan
)

# Exception handlers
app.add_exception_handler(APIError, api_exception_handler)
app.add_exception_handler(Exception, general_exception_handler)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins.split(","),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Custom middleware (order matters - first added runs last)
# Execution order: logging → session_validation
app.middleware("http")(session_validation_middleware)  # runs second
app.middleware("http")(request_logging_middleware)     # runs first

# Import and include routers
from app.routers import payments, events, tickets, transfers, coupons, audit

# Payments and provider webhook
app.include_router(payments.router, prefix="/payments", tags=["payments"])

# Availability (public)
app.include_router(events.router, prefix="/events", tags=["events"])

# Tickets, check-in and downloads (requires auth)
app.include_router(tickets.router, prefix="/tickets", tags=["tickets"])

# Ticket transfers (requires auth)
app.include_router(transfers.router, prefix="/transfers", tags=["transfers"])

# Coupons (staff management, buyer preview)
app.include_router(coupons.router, prefix="/coupons", tags=["coupons"])

# Audit trail (staff)
app.include_router(audit.router, prefix="/audit", tags=["audit"])


@app.get("/")
async def root():
    return {
        "service": "MainEvents Tickets API",
        "version": "1.0.0",
        "database": settings.db_name,
        "environment": settings.environment
    }


@app.get("/health")
async def health():
    return {
        "status": "healthy",
        "database": settings.db_name,
        "host": settings.db_host,
        "scheduler": scheduler.status()
    }


# Auto-start server if run directly
if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "app.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug
    )
