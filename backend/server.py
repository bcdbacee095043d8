from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pymongo.errors import PyMongoError
from contextlib import asynccontextmanager
from database import database
from routes import billing, webhooks, admin_billing
from services.billing_engine import BillingEngine
from services.plan_catalog import plan_catalog
from services.stripe_service import StripePaymentsClient, get_stripe_api_key, get_webhook_secret

import os
import logging
from pathlib import Path
from dotenv import load_dotenv

# Load environment variables
ROOT_DIR = Path(__file__).parent
load_dotenv(ROOT_DIR / '.env')

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


def log_stripe_config():
    """Log Stripe mode and price mapping at startup (never the secret keys)."""
    stripe_key = get_stripe_api_key()
    if not stripe_key:
        logger.error("STRIPE_API_KEY / STRIPE_SECRET_KEY is not set. Checkout and subscription changes will fail.")
    else:
        stripe_mode = "test" if stripe_key.startswith("sk_test_") else "live"
        logger.info("STRIPE_MODE = %s (from Stripe key prefix)", stripe_mode)
    if not get_webhook_secret():
        logger.error("STRIPE_WEBHOOK_SECRET is not set. Webhooks will be rejected with 500.")
    for plan in plan_catalog.list_plans():
        if plan.price > 0:
            logger.info(
                "Stripe price ID plan=%s price_id=%s",
                plan.name, plan_catalog.get_price_id(plan.name) or "(missing)"
            )


# Lifespan context manager for startup/shutdown
@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    logger.info("Starting Hook Entitlements API")
    await database.connect()
    log_stripe_config()

    app.state.billing_engine = BillingEngine(database.get_db(), StripePaymentsClient())
    logger.info("Billing engine ready")

    yield

    # Shutdown
    logger.info("Shutting down Hook Entitlements API")
    await database.close()

# Create FastAPI app
app = FastAPI(
    title="Hook Entitlements API",
    description="Usage-based entitlements and Stripe billing reconciliation",
    version="1.0.0",
    lifespan=lifespan
)

# CORS configuration
app.add_middleware(
    CORSMiddleware,
    allow_credentials=True,
    allow_origins=os.environ.get('CORS_ORIGINS', '*').split(','),
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(billing.router)
app.include_router(webhooks.router)
app.include_router(admin_billing.router)

# Root endpoint
@app.get("/api")
async def root():
    return {
        "service": "Hook Entitlements",
        "version": "1.0.0",
        "status": "operational"
    }

# Health check: entitlement checks fail closed, so storage reachability is the readiness signal
@app.get("/api/health")
async def health_check(request: Request):
    engine = getattr(request.app.state, "billing_engine", None)
    storage = "unavailable"
    if engine is not None:
        try:
            await engine.db.command("ping")
            storage = "ok"
        except PyMongoError as e:
            logger.warning(f"Health check storage ping failed: {e}")
    healthy = storage == "ok"
    return JSONResponse(
        status_code=200 if healthy else 503,
        content={
            "status": "healthy" if healthy else "degraded",
            "storage": storage,
            "webhook_secret_configured": bool(get_webhook_secret()),
            "environment": os.getenv("ENVIRONMENT", "development"),
        },
    )

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "server:app",
        host="0.0.0.0",
        port=8001,
        reload=os.getenv("ENVIRONMENT") == "development"
    )
