import logging

from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from db.config import engine
from models.mysql_models import Base
from providers.digitalocean import close_compute_client
from providers.paypal import close_payment_client
from routes.account_routes import router as account_router
from routes.billing_routes import router as billing_router
from routes.resource_routes import router as resource_router
from routes.metrics_routes import router as metrics_router
from routes.metering_routes import router as metering_router
from services.exceptions import (
    AccountNotFoundError,
    PersistenceError,
    ProviderError,
    ResourceNotFoundError,
)

logger = logging.getLogger(__name__)

app = FastAPI(
    title="VPS Billing API",
    description="Prepaid VPS billing - accounts, deposits, resources, usage metering and bandwidth overage",
    version="1.0.0",
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_url="/openapi.json"
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.on_event("startup")
def startup():
    try:
        Base.metadata.create_all(bind=engine)
    except Exception as e:
        logger.warning(f"Failed to create tables: {e}")


@app.on_event("shutdown")
async def shutdown():
    await close_compute_client()
    await close_payment_client()


@app.exception_handler(AccountNotFoundError)
@app.exception_handler(ResourceNotFoundError)
async def not_found_handler(request: Request, exc: Exception):
    return JSONResponse(status_code=status.HTTP_404_NOT_FOUND, content={"detail": str(exc)})


@app.exception_handler(ProviderError)
async def provider_error_handler(request: Request, exc: ProviderError):
    logger.error(f"Provider call failed on {request.url.path}: {exc}")
    return JSONResponse(status_code=status.HTTP_502_BAD_GATEWAY, content={"detail": str(exc)})


@app.exception_handler(PersistenceError)
async def persistence_error_handler(request: Request, exc: PersistenceError):
    return JSONResponse(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        content={"detail": "Storage temporarily unavailable"}
    )


app.include_router(account_router, prefix="/api/v1")
app.include_router(billing_router, prefix="/api/v1")
app.include_router(resource_router, prefix="/api/v1")
app.include_router(metrics_router, prefix="/api/v1")
app.include_router(metering_router, prefix="/api/v1")


@app.get("/", tags=["Health"])
def health_check():
    return {"status": "healthy", "service": "vpsbilling"}


@app.get("/health", tags=["Health"])
def health():
    return {"status": "ok"}
