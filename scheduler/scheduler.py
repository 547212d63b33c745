# scheduler/scheduler.py
import asyncio
import logging
import os

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from dotenv import load_dotenv

from crawler.crawler import WebshopCrawler
from crawler.db import ensure_indexes, get_db, get_enabled_stores
from crawler.feed import snapshots_from_feed
from crawler.store_updater import StoreUpdater, batch_timestamp

load_dotenv()
RUN_ON_STARTUP = os.getenv("RUN_ON_STARTUP", "false").lower() in ("1", "true", "yes")
UPDATE_CRON_HOUR = int(os.getenv("UPDATE_CRON_HOUR", "12"))
UPDATE_CRON_MINUTE = int(os.getenv("UPDATE_CRON_MINUTE", "0"))

logger = logging.getLogger("scheduler")
logger.setLevel(logging.INFO)
if not logger.handlers:
    handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter("%(asctime)s [%(levelname)s] %(message)s"))
    logger.addHandler(handler)


def log_result(result):
    logger.info(f"FINISHED UPDATING {result.store}")
    logger.info(f"{result.new_prices} price intervals inserted")
    if result.price_update:
        logger.info(
            f"{result.price_update.matched_count} price intervals matched, "
            f"{result.price_update.modified_count} extended"
        )
    if result.product_metadata_upsert:
        meta = result.product_metadata_upsert
        logger.info(
            f"{meta.matched_count} metadata matched, {meta.modified_count} modified, "
            f"{meta.upserted_count} upserted"
        )
    if result.rejected:
        logger.warning(f"{result.rejected} snapshots rejected")
    for error in result.errors:
        logger.error(f"{result.store}: {error}")


async def update_store(db, store, timestamp, feed_loader=None):
    """
    Collect snapshots for one store and write them to the price history.

    Args:
        db: Motor database
        store (StoreConfig): Store to update
        timestamp (datetime): Batch timestamp shared by every store of the run
        feed_loader (callable, optional): `async (store) -> list[dict]`
            returning raw feed items; feed stores are skipped without one

    Returns:
        StoreUpdateResult or None: None when the store was skipped
    """
    if store.crawl_type == "crawler":
        run = await WebshopCrawler(store, timestamp).crawl_site()
        snapshots = run.snapshots()
    elif feed_loader is not None:
        snapshots = snapshots_from_feed(await feed_loader(store), store.name)
    else:
        logger.warning(f"No feed loader configured, skipping feed store {store.name}")
        return None

    logger.info(f"{store.name}: {len(snapshots)} products collected")
    updater = StoreUpdater(db, store)
    await updater.update_products(snapshots, timestamp)
    result = await updater.submit_all_documents()
    log_result(result)
    return result


async def update_all_stores(db=None, feed_loader=None):
    """
    Update every enabled store once.

    Configuration problems (no MONGO_URI, an invalid store document) raise
    ConfigurationError before any store is touched. After that, a store
    that fails is logged and the run moves on to the next one.

    Returns:
        list[StoreUpdateResult]: Results of the stores that completed
    """
    if db is None:
        db = get_db()
    stores = await get_enabled_stores(db)
    timestamp = batch_timestamp()
    results = []
    for store in stores:
        logger.info(f"UPDATING {store.name}")
        try:
            result = await update_store(db, store, timestamp, feed_loader)
        except Exception:
            logger.exception(f"Update of store {store.name} failed")
            continue
        if result is not None:
            results.append(result)
    logger.info(f"Updated {len(results)} of {len(stores)} stores")
    return results


async def async_main():
    """
    Run the daily update schedule forever.

    Validates the database configuration and creates indexes first,
    optionally runs one update right away (RUN_ON_STARTUP), then registers
    a daily cron job at UPDATE_CRON_HOUR:UPDATE_CRON_MINUTE on an
    AsyncIOScheduler.
    """
    await ensure_indexes(get_db())
    if RUN_ON_STARTUP:
        logger.info("Running startup update")
        await update_all_stores()

    scheduler = AsyncIOScheduler()
    scheduler.add_job(
        update_all_stores,
        "cron",
        hour=UPDATE_CRON_HOUR,
        minute=UPDATE_CRON_MINUTE,
        id="update_all_stores",
        max_instances=1,
        coalesce=True,
    )
    scheduler.start()
    logger.info(
        f"Scheduler started (daily at {UPDATE_CRON_HOUR:02d}:{UPDATE_CRON_MINUTE:02d})"
    )
    await asyncio.Event().wait()


if __name__ == "__main__":
    asyncio.run(async_main())
