from token_quota.routes import token_quota_router
from token_quota.db_init import ensure_indexes
from services.scheduler_setup import setup_scheduler
from utils.environment import ENVIRONMENT, is_test
from fastapi import FastAPI, APIRouter
from starlette.middleware.cors import CORSMiddleware
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from datetime import datetime, timezone
import os
import logging

# Create the main app
app = FastAPI(title="Token Quota Service")

api_router = APIRouter(prefix="/api")


@api_router.get("/")
async def root():
    return {"message": "Token Quota API", "version": "1.0.0"}


@api_router.get("/health")
async def health():
    return {"status": "healthy", "environment": ENVIRONMENT, "timestamp": datetime.now(timezone.utc).isoformat()}


api_router.include_router(token_quota_router)

app.include_router(api_router)

app.add_middleware(
    CORSMiddleware,
    allow_credentials=True,
    allow_origins=[origin.strip() for origin in os.environ.get(
        'CORS_ORIGINS', 'http://localhost:3000').split(',')],
    allow_methods=["*"],
    allow_headers=["*"],
)

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

scheduler = AsyncIOScheduler()


@app.on_event("startup")
async def startup():
    # Fail fast if the database is unavailable
    from database import db, check_db_connection
    db_ok, db_error = await check_db_connection()
    if not db_ok:
        logger.critical(f"Database connection failed on startup: {db_error}")
        raise RuntimeError(
            f"Cannot start application - database connection failed: {db_error}")

    await ensure_indexes(db)

    if not is_test():
        setup_scheduler(scheduler, db)
        scheduler.start()
        logger.info("Scheduler started")


@app.on_event("shutdown")
async def shutdown():
    if scheduler.running:
        scheduler.shutdown(wait=False)

    from database import close_db_connection
    close_db_connection()
