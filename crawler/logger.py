# crawler/logger.py
import logging
import os
import re

from dotenv import load_dotenv

load_dotenv()
LOG_DIR = os.getenv("LOG_DIR")
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

logger = logging.getLogger("crawler")
logger.setLevel(LOG_LEVEL)
if not logger.handlers:
    handler = logging.StreamHandler()
    handler.setLevel(LOG_LEVEL)
    handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(message)s"))
    logger.addHandler(handler)


def safe_store_name(name):
    return re.sub(r"[^a-zA-Z0-9]", "-", name)


def get_store_logger(store_name, batch_timestamp=None):
    """
    Return the logger used for everything one store's crawl reports.

    The logger is a child of "crawler", so lines reach the console handler
    with the store name as a prefix. When LOG_DIR is set, debug-level lines
    are also written to LOG_DIR/<store>/<batch timestamp>.log.

    Args:
        store_name (str): Human-readable store name
        batch_timestamp (datetime, optional): Start of the update batch

    Returns:
        logging.LoggerAdapter: Logger prefixing every message with the store
    """
    safe_name = safe_store_name(store_name)
    store_logger = logging.getLogger(f"crawler.{safe_name}")
    if LOG_DIR and batch_timestamp is not None:
        directory = os.path.join(LOG_DIR, safe_name)
        os.makedirs(directory, exist_ok=True)
        filename = os.path.join(
            directory, f"{batch_timestamp.strftime('%Y%m%dT%H%M%S')}.log"
        )
        if not any(
            getattr(h, "baseFilename", None) == os.path.abspath(filename)
            for h in store_logger.handlers
        ):
            file_handler = logging.FileHandler(filename, encoding="utf-8")
            file_handler.setLevel(logging.DEBUG)
            file_handler.setFormatter(
                logging.Formatter("%(asctime)s %(levelname)s %(message)s")
            )
            store_logger.addHandler(file_handler)
            store_logger.setLevel(logging.DEBUG)
    return StoreLoggerAdapter(store_logger, {"store": store_name})


class StoreLoggerAdapter(logging.LoggerAdapter):
    def process(self, msg, kwargs):
        return f"[{self.extra['store']}] {msg}", kwargs


def close_store_logger(store_logger):
    """Detach and close file handlers added for one crawl."""
    target = store_logger.logger
    for h in list(target.handlers):
        if isinstance(h, logging.FileHandler):
            target.removeHandler(h)
            h.close()
