from fastapi import FastAPI, APIRouter
from starlette.middleware.cors import CORSMiddleware
import os
import logging
from datetime import datetime, timezone

from database import check_db_connection, get_client, get_db
from credit_ledger import __version__
from credit_ledger.db_init import initialize
from credit_ledger.routes import credits_router, subscriptions_router, webhooks_router
from routes.seo_ai import seo_ai_router

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

app = FastAPI(title="Blog Platform - Credits & Payments")

api_router = APIRouter(prefix="/api")


@api_router.get("/")
async def root():
    return {"message": "Blog Platform Credits API", "version": __version__}


@api_router.get("/health")
async def health():
    return {"status": "healthy", "timestamp": datetime.now(timezone.utc).isoformat()}


api_router.include_router(credits_router)
api_router.include_router(subscriptions_router)
# Razorpay calls this with its own signature, not a bearer token
api_router.include_router(webhooks_router)
api_router.include_router(seo_ai_router)

app.include_router(api_router)

app.add_middleware(
    CORSMiddleware,
    allow_credentials=True,
    allow_origins=[origin.strip() for origin in os.environ.get(
        'CORS_ORIGINS', 'http://localhost:3000').split(',')],
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.on_event("startup")
async def startup():
    # Fail fast if database is unavailable
    db_ok, db_error = await check_db_connection()
    if not db_ok:
        logger.critical(f"Database connection failed on startup: {db_error}")
        raise RuntimeError(
            f"Cannot start application - database connection failed: {db_error}")

    # Idempotent; the unique indexes are required for exactly-once crediting
    for line in await initialize(get_db()):
        logger.info(line)

    if not os.environ.get("RAZORPAY_WEBHOOK_SECRET"):
        logger.warning("RAZORPAY_WEBHOOK_SECRET not set - all webhooks will be rejected")


@app.on_event("shutdown")
async def shutdown_db_client():
    get_client().close()
