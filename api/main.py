"""
Payment Reconciliation API - Main Application.

FastAPI application with CORS enabled for storefront communication.
"""

import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from api import __version__
from api.dependencies import get_settings

settings = get_settings()

logging.basicConfig(
    level=settings.log_level,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)

# Create FastAPI application
app = FastAPI(
    title="Payment Reconciliation API",
    description="Turns captured payments into exactly one storefront order",
    version=__version__,
    docs_url="/docs",
    redoc_url="/redoc",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[settings.frontend_url],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.get("/health", tags=["Health"])
def health_check():
    """
    Health check endpoint.

    Returns the API status and version.
    """
    return {
        "status": "healthy",
        "version": __version__,
        "service": "payment-reconciliation-api"
    }


@app.get("/", tags=["Root"])
def root():
    """
    Root endpoint with API information.
    """
    return {
        "message": "Payment Reconciliation API",
        "version": __version__,
        "docs": "/docs",
        "health": "/health"
    }


# Import and include routers
from api.routers import orders, payments, webhooks

app.include_router(payments.router, prefix="/api/v1", tags=["Payments"])
app.include_router(orders.router, prefix="/api/v1", tags=["Orders"])
app.include_router(webhooks.router, prefix="/api/v1", tags=["Webhooks"])
