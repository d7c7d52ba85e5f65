"""
MongoDB connection for the token quota service

MONGO_URL and DB_NAME are required. Importing this module fails fast when
either is missing; motor connects lazily, so no I/O happens at import.
"""
from motor.motor_asyncio import AsyncIOMotorClient
import os
import logging
from pathlib import Path
from typing import Optional, Tuple
from dotenv import load_dotenv

logger = logging.getLogger(__name__)

load_dotenv(Path(__file__).parent / '.env')


def mongo_settings() -> Tuple[str, str]:
    """Return (mongo_url, db_name) from the environment."""
    missing = [name for name in ("MONGO_URL", "DB_NAME") if not os.environ.get(name)]
    if missing:
        raise ValueError(
            f"Missing required environment variables: {', '.join(missing)}. "
            "Set them in backend/.env or the process environment."
        )
    return os.environ["MONGO_URL"], os.environ["DB_NAME"]


MONGO_URL, DB_NAME = mongo_settings()

client = AsyncIOMotorClient(
    MONGO_URL,
    maxPoolSize=int(os.environ.get("MONGO_MAX_POOL_SIZE", "50")),
    serverSelectionTimeoutMS=int(os.environ.get("MONGO_SERVER_SELECTION_TIMEOUT_MS", "5000")),
    retryWrites=True,
)

db = client[DB_NAME]


async def check_db_connection() -> Tuple[bool, Optional[str]]:
    """Ping the server. Returns (ok, error_message)."""
    try:
        await client.admin.command('ping')
    except Exception as e:
        logger.error(f"Database connection failed: {e}")
        return False, str(e)

    logger.info(f"Database connected: {DB_NAME}")
    return True, None


def close_db_connection():
    client.close()
    logger.info("Database connection closed")
