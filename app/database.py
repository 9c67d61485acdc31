"""
Database initialization and connection management.
"""

from motor.motor_asyncio import AsyncIOMotorClient
from beanie import init_beanie
from app.models import DOCUMENT_MODELS, Transaction
from app.core.config import DatabaseConfig
from app.core.exceptions import DatabaseError, ConfigurationError
from app.core.monitoring import monitor_errors
import logging
import asyncio
from datetime import datetime, timezone
from tenacity import retry, stop_after_attempt, wait_exponential
from typing import Dict, Any

logger = logging.getLogger(__name__)

_db_client = None


@monitor_errors("database_init")
@retry(
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=1, min=2, max=10),
    reraise=True,
)
async def init_db(db_config: DatabaseConfig):
    """
    Initialize MongoDB connection and Beanie ODM.

    Raises:
        DatabaseError: If database connection fails
        ConfigurationError: If configuration is invalid
    """
    global _db_client

    try:
        if not db_config.url:
            raise ConfigurationError(
                "MONGO_URL environment variable is not set",
                config_key="MONGO_URL",
                expected_value="mongodb://localhost:27017/payouts",
            )

        connection_kwargs = {
            "maxPoolSize": db_config.max_pool_size,
            "minPoolSize": db_config.min_pool_size,
            "serverSelectionTimeoutMS": db_config.server_selection_timeout_ms,
            "connectTimeoutMS": db_config.connect_timeout_ms,
            "socketTimeoutMS": db_config.socket_timeout_ms,
            "tz_aware": True,
        }

        # Log pool settings only (no connection string or credentials)
        logger.info(
            f"Connecting to MongoDB (pool: min={connection_kwargs['minPoolSize']}, "
            f"max={connection_kwargs['maxPoolSize']})"
        )

        client = AsyncIOMotorClient(db_config.url, **connection_kwargs)

        try:
            await asyncio.wait_for(
                client.admin.command("ping"),
                timeout=5.0,
            )
        except asyncio.TimeoutError:
            raise DatabaseError("Database connection timeout", operation="ping_test")

        await init_beanie(
            database=client.get_default_database(),
            document_models=DOCUMENT_MODELS,
        )

        _db_client = client

        logger.info("MongoDB connected and Beanie initialized successfully")

        return client

    except ConfigurationError:
        raise
    except DatabaseError:
        raise
    except Exception as e:
        logger.error("Failed to initialize database", exc_info=True)
        raise DatabaseError(
            "Database initialization failed",
            operation="init_db",
        ) from e


async def get_database_client() -> AsyncIOMotorClient:
    """
    Get the database client instance.

    Raises:
        DatabaseError: If database is not initialized
    """
    if _db_client is None:
        raise DatabaseError(
            "Database not initialized. Call init_db() first.",
            operation="get_client",
        )

    return _db_client


async def close_database():
    """Close the database connection gracefully."""
    global _db_client

    if _db_client:
        _db_client.close()
        _db_client = None
        logger.info("Database connection closed")


async def health_check() -> Dict[str, Any]:
    """
    Perform database health check.

    Returns:
        Dict with health status information
    """
    try:
        client = await get_database_client()

        await client.admin.command("ping")
        await Transaction.find_one({})

        return {
            "status": "healthy",
            "database": "connected",
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }

    except Exception as e:
        logger.warning(f"Database health check failed: {type(e).__name__}")
        return {
            "status": "unhealthy",
            "database": "disconnected",
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }
