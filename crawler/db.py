# crawler/db.py
import os

from dotenv import load_dotenv
from motor.motor_asyncio import AsyncIOMotorClient
from pydantic import ValidationError
from pymongo import ASCENDING, DESCENDING

from .errors import ConfigurationError
from .models import StoreConfig

load_dotenv()

MONGO_URI = os.getenv("MONGO_URI")
MONGO_DB = os.getenv("MONGO_DB", "price-tracker")

PRICE_CHANGES = "priceChanges"
PRODUCT_METADATA = "productMetadata"
STORES = "stores"

_client = None
_db = None


def get_client():
    """Initialize and return the MongoDB AsyncIOMotorClient singleton."""
    global _client, _db
    if _client is None:
        if not MONGO_URI:
            raise ConfigurationError("MONGO_URI is not set")
        _client = AsyncIOMotorClient(MONGO_URI, tz_aware=True)
        _db = _client[MONGO_DB]
    return _client


def get_db():
    """Return the MongoDB database instance, initializing if needed."""
    global _db
    if _db is None:
        get_client()
    return _db


async def ensure_indexes(db):
    """Create the indexes the price history lookups and metadata upserts rely on."""
    await db[PRICE_CHANGES].create_index(
        [
            ("store_id", ASCENDING),
            ("sku", ASCENDING),
            ("sale_price", ASCENDING),
            ("end", DESCENDING),
        ]
    )
    await db[PRODUCT_METADATA].create_index(
        [("sku", ASCENDING), ("store_id", ASCENDING)], unique=True
    )
    await db[STORES].create_index([("scraper_enabled", ASCENDING)])


async def get_enabled_stores(db):
    """
    Load and validate every store with scraping enabled.

    Args:
        db: Motor database (or a test double exposing `db["stores"].find`)

    Returns:
        list[StoreConfig]: Validated, immutable store configurations

    Raises:
        ConfigurationError: If any enabled store document has an invalid
            shape. Raised before a single store is crawled.
    """
    cursor = db[STORES].find({"scraper_enabled": True})
    documents = await cursor.to_list(length=None)
    stores = []
    for doc in documents:
        try:
            stores.append(StoreConfig.model_validate(doc))
        except ValidationError as e:
            raise ConfigurationError(
                f"Invalid configuration for store {doc.get('name', doc.get('_id'))}: {e}"
            ) from e
    return stores
