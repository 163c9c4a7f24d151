import logging
from contextlib import asynccontextmanager

from motor.motor_asyncio import AsyncIOMotorClient
from pymongo import IndexModel
from config import settings

logger = logging.getLogger(__name__)

client: AsyncIOMotorClient = None
_db_instance = None


class _DbProxy:
    """
    Proxy transparent vers l'instance Motor.
    Permet aux services de faire `from database import db` AVANT connect_db().
    db.collection → délégué à _db_instance.collection au moment de l'appel.
    """
    def __getattr__(self, name):
        if _db_instance is None:
            raise RuntimeError("Database not connected. Call connect_db() first.")
        return getattr(_db_instance, name)

    def __getitem__(self, name):
        if _db_instance is None:
            raise RuntimeError("Database not connected. Call connect_db() first.")
        return _db_instance[name]


db = _DbProxy()


def use_database(mongo_client, db_name: str):
    """Branche un client déjà construit (tests, scripts) à la place de connect_db()."""
    global client, _db_instance
    client = mongo_client
    _db_instance = mongo_client[db_name] if mongo_client is not None else None
    return _db_instance


async def connect_db():
    global client, _db_instance
    client = AsyncIOMotorClient(
        settings.MONGO_URL,
        serverSelectionTimeoutMS=5000,
        connectTimeoutMS=10000,
    )
    _db_instance = client[settings.DB_NAME]
    logger.info(f"Connected to MongoDB: {settings.DB_NAME}")
    try:
        await create_indexes()
    except Exception as e:
        logger.warning(f"Could not create indexes (non-blocking): {e}")


async def close_db():
    global client
    if client:
        client.close()
        logger.info("MongoDB connection closed")


@asynccontextmanager
async def transaction():
    """
    Unité atomique multi-documents.
    Avec MONGO_TRANSACTIONS (replica set requis) : session + transaction Motor,
    à passer en `session=` à chaque opération. Sinon : yield None, et les
    appelants s'appuient sur leurs écritures conditionnelles + compensation.
    """
    if not settings.MONGO_TRANSACTIONS or client is None:
        yield None
        return
    async with await client.start_session() as session:
        async with session.start_transaction():
            yield session


async def create_indexes():
    collections_to_index = {
        "users": [
            IndexModel([("user_id", 1)], unique=True),
            IndexModel([("phone", 1)], unique=True, sparse=True),
            IndexModel([("role", 1)]),
        ],
        "orders": [
            IndexModel([("order_id", 1)], unique=True),
            IndexModel([("customer_id", 1)]),
            IndexModel([("status", 1)]),
            IndexModel([("payment_mode", 1)]),
            IndexModel([("created_at", 1)]),
        ],
        "wallet_transactions": [
            IndexModel([("tx_id", 1)], unique=True),
            IndexModel([("transfer_id", 1)]),
            IndexModel([("account_id", 1)]),
            IndexModel([("order_id", 1)]),
            IndexModel([("created_at", 1)]),
        ],
        "system_wallet": [
            IndexModel([("wallet_id", 1)], unique=True),
        ],
        "notifications": [
            IndexModel([("user_id", 1)]),
            IndexModel([("created_at", 1)]),
        ],
        "translation_cache": [
            IndexModel([("cache_key", 1)], unique=True),
        ],
    }

    for collection_name, index_models in collections_to_index.items():
        try:
            await _db_instance[collection_name].create_indexes(index_models)
            logger.info(f"Indexes created for collection: {collection_name}")
        except Exception as e:
            logger.error(f"Failed to create indexes for collection {collection_name}: {e}")

    logger.info("All MongoDB indexes creation attempts completed.")
