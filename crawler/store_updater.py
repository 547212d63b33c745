# crawler/store_updater.py
import asyncio
import logging
import os
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import List, Optional

from dotenv import load_dotenv
from pymongo.errors import BulkWriteError, PyMongoError

from .db import PRICE_CHANGES, PRODUCT_METADATA
from .errors import InvalidSnapshotError
from .models import StoreConfig
from .utils import is_number

load_dotenv()
PRICE_CHANGE_THRESHOLD = timedelta(
    hours=float(os.getenv("PRICE_CHANGE_THRESHOLD_HOURS", "48"))
)

logger = logging.getLogger("store_updater")
logger.setLevel(logging.INFO)
if not logger.handlers:
    handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(message)s"))
    logger.addHandler(handler)


def batch_timestamp():
    """Current UTC time at millisecond precision, the resolution Mongo stores."""
    now = datetime.now(timezone.utc)
    return now.replace(microsecond=now.microsecond // 1000 * 1000)


def should_open_interval(current, price, timestamp, threshold=PRICE_CHANGE_THRESHOLD):
    """
    Decide between opening a new price interval and extending the current one.

    Args:
        current (dict or None): Latest interval for the key, by `end`
        price (int or float): Price observed at `timestamp`
        timestamp (datetime): Time of the observation
        threshold (timedelta): Anti-flap window

    Returns:
        bool: True to insert a new interval, False to extend `current`

    A changed price only opens a new interval once the current one has not
    been confirmed for at least `threshold`; a change seen inside that
    window is treated as noise and simply extends the current interval.
    """
    if current is None:
        return True
    return current["price"] != price and current["end"] <= timestamp - threshold


@dataclass
class UpsertManyResult:
    matched_count: int = 0
    modified_count: int = 0
    upserted_count: int = 0

    def add(self, update_result):
        self.matched_count += update_result.matched_count
        self.modified_count += update_result.modified_count
        if update_result.upserted_id is not None:
            self.upserted_count += 1


@dataclass
class StoreUpdateResult:
    store: str
    new_prices: int = 0
    price_update: Optional[UpsertManyResult] = None
    product_metadata_upsert: Optional[UpsertManyResult] = None
    rejected: int = 0
    errors: List[str] = field(default_factory=list)


class StoreUpdater:
    """
    Turns one batch of snapshots for one store into price intervals and metadata.

    Usage:
        updater = StoreUpdater(db, store)
        await updater.update_products(snapshots, timestamp)
        result = await updater.submit_all_documents()

    Every (product, price kind) pair is looked up concurrently; nothing is
    written until submit_all_documents(), which runs the three write groups
    (new intervals, extended intervals, metadata) independently of each other.
    """

    def __init__(self, db, store: StoreConfig, threshold=PRICE_CHANGE_THRESHOLD):
        self.db = db
        self.store = store
        self.threshold = threshold
        self.price_documents = []
        self.price_updates = []
        self.metadata_documents = []
        self.rejected = 0
        self.errors = []

    def sanitize(self, snapshot):
        """
        Validate one snapshot and coerce its identifying fields to text.

        Accepts a ProductSnapshot or a plain mapping with the same keys.

        Raises:
            InvalidSnapshotError: SKU missing or price not a finite number
        """
        data = snapshot.model_dump() if hasattr(snapshot, "model_dump") else dict(snapshot)
        if data.get("sku") is None or str(data["sku"]).strip() == "":
            raise InvalidSnapshotError("Snapshot has no sku")
        data["sku"] = str(data["sku"]).strip()
        for key in ("brand", "title"):
            if data.get(key) is not None:
                data[key] = str(data[key])
        if not is_number(data.get("price")):
            raise InvalidSnapshotError(
                f"Price {data.get('price')!r} of sku {data['sku']} is not a number"
            )
        return data

    @staticmethod
    def is_on_sale(product):
        sale_price = product.get("sale_price")
        return is_number(sale_price) and sale_price < product["price"]

    async def update_products(self, snapshots, timestamp):
        """
        Plan interval and metadata writes for a whole batch.

        Invalid snapshots are counted and skipped. When a SKU occurs more
        than once, the last snapshot wins so a batch cannot open two
        intervals for the same key.
        """
        products = {}
        for snapshot in snapshots:
            try:
                product = self.sanitize(snapshot)
            except InvalidSnapshotError as e:
                self.rejected += 1
                logger.error(f"[{self.store.name}] Rejected snapshot: {e}")
                continue
            products[product["sku"]] = product

        await asyncio.gather(
            *(self.update_product(product, timestamp) for product in products.values())
        )

    async def update_product(self, product, timestamp):
        on_sale = self.is_on_sale(product)
        self.metadata_documents.append(self.get_product_metadata(product, on_sale, timestamp))
        kinds = [(False, product["price"])]
        if on_sale:
            kinds.append((True, product["sale_price"]))
        await asyncio.gather(
            *(
                self.update_price(product["sku"], sale_price, price, timestamp)
                for sale_price, price in kinds
            )
        )

    async def latest_interval(self, sku, sale_price):
        return await self.db[PRICE_CHANGES].find_one(
            {"store_id": self.store.id, "sku": sku, "sale_price": sale_price},
            sort=[("end", -1)],
        )

    async def update_price(self, sku, sale_price, price, timestamp):
        try:
            current = await self.latest_interval(sku, sale_price)
        except PyMongoError as e:
            self.errors.append(f"lookup {sku}: {e}")
            logger.error(f"[{self.store.name}] Price lookup failed for {sku}: {e}")
            return

        if should_open_interval(current, price, timestamp, self.threshold):
            self.price_documents.append(
                {
                    "sku": sku,
                    "store_id": self.store.id,
                    "store": self.store.name,
                    "sale_price": sale_price,
                    "price": price,
                    "start": timestamp,
                    "end": timestamp,
                }
            )
        else:
            self.price_updates.append((current["_id"], max(current["end"], timestamp)))

    def get_product_metadata(self, product, on_sale, timestamp):
        """
        Metadata document for one product.

        Only fields observed in this batch are set; a field missing now keeps
        whatever an earlier batch stored for it.
        """
        document = {
            "sku": product["sku"],
            "store_id": self.store.id,
            "store": self.store.name,
            "last_seen": timestamp,
        }
        optional = {
            "name": product.get("title"),
            "brand": product.get("brand"),
            "ean": product.get("gtin"),
            "attributes": product.get("attributes"),
            "categories": product.get("categories"),
            "image": product.get("image"),
            "description": product.get("description"),
            "in_stock": product.get("in_stock"),
            "url": product.get("url"),
        }
        document.update({k: v for k, v in optional.items() if v is not None})
        if on_sale:
            document["sale_price_last_seen"] = timestamp
        return document

    async def submit_all_documents(self):
        """
        Write everything planned by update_products().

        Returns:
            StoreUpdateResult: Counts per write group plus rejected snapshots
                and collected error messages

        Write Groups:
            - New intervals: one unordered insert_many
            - Extended intervals: one update_one per interval _id
            - Metadata: one upsert per (sku, store_id)

        A failing group is logged and recorded in `errors`; it does not stop
        the other groups and nothing is retried.
        """
        result = StoreUpdateResult(store=self.store.name, rejected=self.rejected)
        result.errors.extend(self.errors)
        prices = self.db[PRICE_CHANGES]

        if self.price_documents:
            try:
                inserted = await prices.insert_many(self.price_documents, ordered=False)
                result.new_prices = len(inserted.inserted_ids)
            except BulkWriteError as e:
                result.new_prices = e.details.get("nInserted", 0)
                self._record_error(result, "insert price intervals", e)
            except PyMongoError as e:
                self._record_error(result, "insert price intervals", e)

        if self.price_updates:
            result.price_update = await self._run_updates(
                result,
                "extend price interval",
                [
                    prices.update_one({"_id": _id}, {"$set": {"end": end}})
                    for _id, end in self.price_updates
                ],
            )

        if self.metadata_documents:
            metadata = self.db[PRODUCT_METADATA]
            result.product_metadata_upsert = await self._run_updates(
                result,
                "upsert product metadata",
                [
                    metadata.update_one(
                        {"sku": doc["sku"], "store_id": doc["store_id"]},
                        {"$set": doc},
                        upsert=True,
                    )
                    for doc in self.metadata_documents
                ],
            )
        return result

    async def _run_updates(self, result, label, operations):
        aggregate = UpsertManyResult()
        for outcome in await asyncio.gather(*operations, return_exceptions=True):
            if isinstance(outcome, PyMongoError):
                self._record_error(result, label, outcome)
            elif isinstance(outcome, BaseException):
                raise outcome
            else:
                aggregate.add(outcome)
        return aggregate

    def _record_error(self, result, label, error):
        result.errors.append(f"{label}: {error}")
        logger.error(f"[{self.store.name}] Failed to {label}: {error}")
