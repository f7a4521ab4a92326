"""
Database connection and configuration

Environment validation for the MongoDB storage backend.
Fails fast with clear error messages if required variables are missing.
"""
from motor.motor_asyncio import AsyncIOMotorClient
import logging
from pathlib import Path
from dotenv import load_dotenv

logger = logging.getLogger(__name__)

ROOT_DIR = Path(__file__).parent
load_dotenv(ROOT_DIR / '.env')


def validate_required_env_vars(settings):
    """
    Validate the variables the Mongo backend needs before the app starts.
    Raises ValueError with clear error message if required variables are missing.
    """
    required_vars = {
        "MONGO_URL": (settings.mongo_url, "MongoDB connection string (e.g., mongodb://localhost:27017)"),
        "DB_NAME": (settings.db_name, "Database name (e.g., account_trust)")
    }

    missing = []
    for var, (value, description) in required_vars.items():
        if not value:
            missing.append(f"  - {var}: {description}")

    if missing:
        error_msg = (
            "\n" + "=" * 60 + "\n"
            "CRITICAL: Missing required environment variables!\n"
            "=" * 60 + "\n"
            "STORAGE_BACKEND=mongo requires:\n\n"
            + "\n".join(missing) + "\n\n"
            "Please check your .env file or environment configuration.\n"
            + "=" * 60
        )
        raise ValueError(error_msg)


def create_mongo_client(settings):
    """
    Build the motor client for the configured database.

    Returns:
        Tuple of (client, db)
    """
    validate_required_env_vars(settings)

    try:
        client = AsyncIOMotorClient(
            settings.mongo_url,
            maxPoolSize=50,
            minPoolSize=10,
            connectTimeoutMS=5000,
            serverSelectionTimeoutMS=5000,
            retryWrites=True,
            tz_aware=True
        )
    except Exception as e:
        raise ValueError(f"Failed to create MongoDB client: {e}")

    return client, client[settings.db_name]


async def check_db_connection(client, db):
    """
    Test database connection health.

    Returns:
        Tuple[bool, Optional[str]]: (success, error_message)
    """
    try:
        await client.admin.command('ping')
        await db.list_collection_names()

        logger.info(f"Database connected successfully: {db.name}")
        return True, None

    except Exception as e:
        error_msg = f"Database connection failed: {e}"
        logger.error(error_msg)
        return False, error_msg
