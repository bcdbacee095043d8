from motor.motor_asyncio import AsyncIOMotorClient
from pymongo.errors import ConnectionFailure, ExecutionTimeout, WTimeoutError
from dotenv import load_dotenv
import functools
import os
import logging
from pathlib import Path

from services.billing_errors import StorageUnavailable

ROOT_DIR = Path(__file__).parent
load_dotenv(ROOT_DIR / '.env')

logger = logging.getLogger(__name__)

STORAGE_TIMEOUT_MS = int(os.getenv("STORAGE_TIMEOUT_MS", "3000"))


def create_client(mongo_url: str) -> AsyncIOMotorClient:
    """Motor client with seconds-scale timeouts so storage calls never block indefinitely."""
    return AsyncIOMotorClient(
        mongo_url,
        tz_aware=True,
        serverSelectionTimeoutMS=STORAGE_TIMEOUT_MS,
        connectTimeoutMS=STORAGE_TIMEOUT_MS,
        socketTimeoutMS=STORAGE_TIMEOUT_MS,
    )


def storage_operation(func):
    """Surface pymongo connectivity and timeout failures as StorageUnavailable.

    DuplicateKeyError and other write errors pass through untouched; callers
    rely on them for insert-if-absent semantics.
    """
    @functools.wraps(func)
    async def wrapper(*args, **kwargs):
        try:
            return await func(*args, **kwargs)
        except (ConnectionFailure, ExecutionTimeout, WTimeoutError) as e:
            logger.error(f"STORAGE_UNAVAILABLE operation={func.__qualname__} error={e}")
            raise StorageUnavailable(f"{func.__qualname__}: {e}") from e
    return wrapper


async def ensure_billing_indexes(db):
    """Unique indexes back every atomic primitive the billing engine relies on."""
    # One subscription mirror per user
    await db.subscription_records.create_index("user_id", unique=True)
    await db.subscription_records.create_index("provider_customer_id", sparse=True)
    await db.subscription_records.create_index("provider_subscription_id", sparse=True)

    # Usage ledger - rollover insert-if-absent is keyed on (user_id, period_start)
    await db.usage_ledger.create_index("row_id", unique=True)
    await db.usage_ledger.create_index(
        [("user_id", 1), ("period_start", 1)],
        unique=True
    )
    await db.usage_ledger.create_index([("user_id", 1), ("period_end", -1)])

    # Webhook idempotency - duplicate provider_event_id must not process twice
    await db.webhook_events.create_index("provider_event_id", unique=True)
    await db.webhook_events.create_index([("processed", 1), ("received_at", -1)])

    # Payment history - one record per invoice outcome
    await db.payment_history.create_index(
        [("provider_invoice_id", 1), ("status", 1)],
        unique=True
    )
    await db.payment_history.create_index([("user_id", 1), ("created_at", -1)])

    # Audit log - timeline queries
    await db.audit_logs.create_index([("user_id", 1), ("timestamp", -1)])
    await db.audit_logs.create_index([("action", 1), ("timestamp", -1)])


class Database:
    client: AsyncIOMotorClient = None
    db = None

    async def connect(self):
        try:
            mongo_url = os.environ['MONGO_URL']
            self.client = create_client(mongo_url)
            self.db = self.client[os.environ['DB_NAME']]
            # Verify connection
            await self.db.command("ping")
            logger.info(f"Connected to MongoDB: {os.environ['DB_NAME']}")

            await self._create_indexes()
        except Exception as e:
            logger.error(f"Failed to connect to MongoDB: {e}")
            raise

    async def close(self):
        if self.client:
            self.client.close()
            logger.info("MongoDB connection closed")

    def get_db(self):
        return self.db

    async def _create_indexes(self):
        """Create MongoDB indexes. Failure here is fatal: without the unique
        indexes the ledger and webhook dedupe are not safe under concurrency."""
        await ensure_billing_indexes(self.db)
        logger.info("MongoDB indexes created/verified")


# Global database instance
database = Database()

