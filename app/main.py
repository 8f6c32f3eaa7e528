from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from app import database
from app.api.endpoints import admin, auth, deployments, payments, transactions, users
from app.config import settings
from app.core.exceptions import AlreadyRunningError, PanelError, ProvisioningError
from app.core.logging import app_logger
from app.core.middleware import RequestLoggingMiddleware, UserInjectionMiddleware
from app.services.billing import (
    BillingScheduler,
    shutdown_billing_scheduler,
    start_billing_scheduler,
)
from app.services.provisioner import TemplateProvisioner
from app.services.supervisor import Pm2Supervisor


@asynccontextmanager
async def lifespan(app: FastAPI):
    if settings.DB_CREATE_TABLES:
        await database.create_tables()
    if settings.BILLING_SCHEDULER_ENABLED:
        start_billing_scheduler(
            BillingScheduler(database.AsyncSessionLocal, Pm2Supervisor(), TemplateProvisioner())
        )
    yield
    shutdown_billing_scheduler()


app = FastAPI(
    title=settings.PROJECT_NAME,
    version=settings.VERSION,
    debug=settings.DEBUG,
    lifespan=lifespan,
)

# Configure CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Add user injection middleware (runs second - parses JWT and injects user)
app.add_middleware(UserInjectionMiddleware)

# Add request logging middleware (runs third - uses injected user for logging)
app.add_middleware(RequestLoggingMiddleware)


@app.exception_handler(PanelError)
async def panel_error_handler(request: Request, exc: PanelError):
    """Map service-layer errors to JSON responses."""
    if isinstance(exc, ProvisioningError):
        # Details stay in the logs
        app_logger.error(f"{request.method} {request.url.path} - {exc.detail} - cause: {exc.__cause__!r}")
    content = {"detail": exc.detail}
    if isinstance(exc, AlreadyRunningError) and exc.handle:
        content["handle"] = exc.handle
    return JSONResponse(status_code=exc.status_code, content=content)


# Include auth router at root level (no prefix)
app.include_router(auth.router, tags=["auth"])
app.include_router(users.router, tags=["users"])
app.include_router(deployments.router, prefix="/deployments", tags=["deployments"])
app.include_router(transactions.router, prefix="/transactions", tags=["transactions"])
app.include_router(payments.router, prefix="/payment-requests", tags=["payments"])
app.include_router(admin.router, prefix="/admin", tags=["admin"])


@app.get("/")
async def root():
    return {
        "name": settings.PROJECT_NAME,
        "version": settings.VERSION,
        "docs": "/docs",
        "redoc": "/redoc",
    }


@app.get("/health")
async def health_check():
    return {"status": "healthy"}
