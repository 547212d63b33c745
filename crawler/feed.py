# crawler/feed.py
import logging

from pydantic import ValidationError

from .models import ProductSnapshot
from .utils import is_number, parse_price

logger = logging.getLogger("crawler")

IN_STOCK_VALUES = frozenset(["in stock", "in_stock", "available"])


def _price(value):
    if is_number(value):
        return value
    if isinstance(value, str):
        return parse_price(value)
    return None


def snapshot_from_feed_item(item):
    """
    Convert one Google Merchant feed item to a ProductSnapshot.

    Feed prices come as numbers or as text with a currency ("1990 ISK");
    both are reduced to whole units the same way crawled prices are.

    Args:
        item (dict): Parsed <item> with `g:`-prefixed keys

    Returns:
        ProductSnapshot

    Raises:
        pydantic.ValidationError: If the item has no id or no usable price
    """
    availability = item.get("g:availability")
    return ProductSnapshot(
        sku=str(item.get("g:id", "")).strip(),
        price=_price(item.get("g:price")),
        sale_price=_price(item.get("g:sale_price")),
        title=item.get("g:title"),
        brand=item.get("g:brand"),
        gtin=str(item["g:gtin"]) if item.get("g:gtin") is not None else None,
        image=item.get("g:image_link"),
        description=item.get("g:description"),
        in_stock=(
            str(availability).lower() in IN_STOCK_VALUES
            if availability is not None
            else None
        ),
        url=item.get("g:link"),
    )


def snapshots_from_feed(items, store_name=""):
    """Convert feed items, logging and skipping the ones that do not validate."""
    snapshots = []
    for item in items:
        try:
            snapshot = snapshot_from_feed_item(item)
        except ValidationError as e:
            logger.warning(f"[{store_name}] Skipping feed item {item.get('g:id')}: {e}")
            continue
        if not snapshot.sku:
            logger.warning(f"[{store_name}] Skipping feed item without id")
            continue
        snapshots.append(snapshot)
    return snapshots
