# crawler/page_scraper.py
import logging
from dataclasses import dataclass, field
from typing import List, Optional, Set
from urllib.parse import urljoin

from .errors import InvalidSkuError, PriceNotFoundError
from .models import (
    Attribute,
    AttributeGroup,
    GroupedAttributeSelectors,
    ProductSelectors,
    ProductSnapshot,
    UrlSkuRule,
)
from .utils import parse_price, strip_html, token_from_url

logger = logging.getLogger("crawler")

# Breadcrumb entries that name navigation, not a category.
DEFAULT_CATEGORY_BAN_LIST = (
    "home",
    "all products",
    "products",
    "back",
    "search results",
    "forsíða",
    "heim",
    "vörur",
    "allar vörur",
    "til baka",
    "leitarniðurstöður",
)

CLICK_TIMEOUT_MS = 5000
FIELD_TIMEOUT_MS = 5000


@dataclass
class ScrapeResult:
    product: ProductSnapshot
    errors: Set[str] = field(default_factory=set)


class PageScraper:
    """
    Builds a ProductSnapshot from the product container of a rendered page.

    SKU and price are required: failing either raises a ProductPageError
    and the page is skipped. Every other field is extracted on its own;
    an error there is logged, the field is left empty and its name is
    reported in ScrapeResult.errors.
    """

    def __init__(
        self,
        selectors: ProductSelectors,
        sanitizers=(),
        category_ban_list=(),
        field_timeout_ms=FIELD_TIMEOUT_MS,
    ):
        self.selectors = selectors
        self.sanitizers = tuple(sanitizers)
        self.category_ban_list = frozenset(
            c.lower() for c in (*DEFAULT_CATEGORY_BAN_LIST, *category_ban_list)
        )
        self.field_timeout_ms = field_timeout_ms

    async def scrape_product_page(self, container, page_url, log=logger):
        """
        Extract one product.

        Args:
            container (Locator): The matched product container
            page_url (str): URL of the page, used for URL-based SKUs,
                relative image sources and the snapshot's url
            log (logging.Logger or LoggerAdapter): Receives field errors

        Returns:
            ScrapeResult: The snapshot and the names of fields that errored

        Raises:
            InvalidSkuError: SKU not found or shorter than 2 characters
            PriceNotFoundError: Price missing, unparseable or zero

        Field order matters: clickers run first so collapsed content is
        visible, and categories are compared against the resolved title.
        """
        await self.run_clickers(container, log)

        sku = await self.eval_sku(container, page_url)
        list_price, sale_price = await self.scrape_prices(container)

        errors = set()

        async def optional(name, coro):
            try:
                return await coro
            except Exception as e:
                log.warning(f"Error scraping {name} from {page_url}: {e}")
                errors.add(name)
                return None

        in_stock = await optional("in_stock", self.scrape_in_stock(container))
        image = await optional("image", self.scrape_image(container, page_url))
        attributes = await optional(
            "attributes", self.scrape_attributes(container, log)
        )
        title = await optional("name", self.scrape_name(container))
        brand = await optional("brand", self.scrape_brand(container))
        description = await optional(
            "description", self.scrape_description(container)
        )
        categories = await optional(
            "categories", self.scrape_categories(container, title)
        )

        product = ProductSnapshot(
            sku=sku,
            price=list_price,
            sale_price=sale_price,
            title=title,
            brand=brand,
            image=image,
            description=description,
            in_stock=in_stock,
            attributes=attributes,
            categories=categories,
            url=page_url,
        )
        log.debug(f"Found product {product.sku} at {page_url}: {product}")
        return ScrapeResult(product=product, errors=errors)

    async def run_clickers(self, container, log=logger):
        for selector in self.selectors.clickers:
            target = container.locator(selector)
            try:
                count = await target.count()
                if count != 1:
                    log.warning(f"Clicker {selector} matched {count} elements, skipping")
                    continue
                await target.click(force=True, timeout=CLICK_TIMEOUT_MS)
            except Exception as e:
                log.warning(f"Clicker {selector} errored: {e}")

    async def eval_text(self, selector, container):
        text = await container.locator(selector).text_content(
            timeout=self.field_timeout_ms
        )
        return text.strip() if text is not None else None

    async def eval_price(self, selector, container):
        return parse_price(await self.eval_text(selector, container))

    async def eval_sku(self, container, page_url):
        rule = self.selectors.sku
        if isinstance(rule, UrlSkuRule):
            sku = token_from_url(page_url, rule.delimiter, rule.index)
        else:
            try:
                sku = await self.eval_text(rule.selector, container)
            except Exception as e:
                raise InvalidSkuError(f"Sku selector {rule.selector} failed: {e}") from e
            if sku is not None:
                for sanitizer in self.sanitizers:
                    sku = sanitizer.apply(sku)
                sku = sku.strip()
        if not sku or len(sku) < 2:
            raise InvalidSkuError(f"Sku {sku!r} is not valid")
        return sku

    async def scrape_prices(self, container):
        """
        Resolve (list price, sale price).

        An old price, when shown and above zero, is the list price and the
        current price is the sale price. Otherwise the current price is both.
        """
        old_price = None
        if self.selectors.old_price:
            old_locator = container.locator(self.selectors.old_price)
            if await old_locator.count() == 1:
                text = await old_locator.text_content(timeout=self.field_timeout_ms)
                old_price = parse_price(text)
        try:
            price = await self.eval_price(self.selectors.list_price, container)
        except Exception as e:
            raise PriceNotFoundError(f"Price selector failed: {e}") from e
        if not price:
            raise PriceNotFoundError("Price not found")
        if old_price and old_price > 0:
            return old_price, price
        return price, price

    async def scrape_in_stock(self, container) -> Optional[bool]:
        if not self.selectors.in_stock:
            return None
        locator = container.locator(self.selectors.in_stock)
        if self.selectors.in_stock_text:
            locator = locator.filter(has_text=self.selectors.in_stock_text)
        return await locator.count() > 0

    async def scrape_image(self, container, page_url):
        if not self.selectors.image:
            return None
        src = await container.locator(self.selectors.image).first.get_attribute(
            "src", timeout=self.field_timeout_ms
        )
        return urljoin(page_url, src) if src else None

    async def scrape_name(self, container):
        if not self.selectors.name:
            return None
        return await self.eval_text(self.selectors.name, container) or None

    async def scrape_brand(self, container):
        if not self.selectors.brand:
            return None
        return await self.eval_text(self.selectors.brand, container) or None

    async def scrape_description(self, container):
        if not self.selectors.description:
            return None
        html = await container.locator(self.selectors.description).inner_html(
            timeout=self.field_timeout_ms
        )
        return strip_html(html)

    async def scrape_attributes(self, container, log=logger) -> Optional[List[AttributeGroup]]:
        selectors = self.selectors.attributes
        if selectors is None:
            return None
        tables = await container.locator(selectors.table).all()
        if not tables:
            raise LookupError(f"No attribute table matches {selectors.table}")

        groups = []
        for table in tables:
            if isinstance(selectors, GroupedAttributeSelectors):
                candidates = await table.locator(selectors.group).all()
                group_locators = []
                for candidate in candidates:
                    labelled = candidate.locator(selectors.attribute).locator(selectors.label)
                    if await labelled.count() > 0:
                        group_locators.append(candidate)
            else:
                group_locators = [table]
            log.debug(f"Attribute table has {len(group_locators)} group(s)")

            for group in group_locators:
                attributes = await self._group_attributes(group, selectors, log)
                if not attributes:
                    continue
                name = await self._group_name(group, selectors)
                groups.append(AttributeGroup(name=name, attributes=attributes))
        return groups or None

    async def _group_name(self, group, selectors):
        group_name = getattr(selectors, "group_name", None)
        if group_name:
            try:
                name = await self.eval_text(group_name, group)
            except Exception:
                name = None
            if name:
                return name
        return selectors.default_group_name

    async def _group_attributes(self, group, selectors, log):
        attributes = []
        for element in await group.locator(selectors.attribute).all():
            if await element.locator(selectors.label).count() == 0:
                continue
            if await element.locator(selectors.value).count() == 0:
                continue
            try:
                name = await self.eval_text(selectors.label, element)
                value = await self.eval_text(selectors.value, element)
            except Exception as e:
                log.debug(f"Error reading attribute: {e}")
                continue
            if not name or not value:
                log.debug(f"Skipping attribute with empty label or value ({name!r}: {value!r})")
                continue
            attributes.append(Attribute(name=name, value=value))
        return attributes

    def is_valid_category(self, category):
        if len(category) < 2:
            return False
        return category.lower() not in self.category_ban_list

    async def scrape_categories(self, container, title=None) -> Optional[List[str]]:
        selectors = self.selectors.categories
        if selectors is None:
            return None
        locator = container.locator(selectors.container)

        if selectors.item:
            categories = []
            for item in await locator.locator(selectors.item).all():
                text = (await item.text_content() or "").strip()
                if (
                    self.is_valid_category(text)
                    and text != title
                    and text not in categories
                ):
                    categories.append(text)
            return categories

        text = (await locator.text_content(timeout=self.field_timeout_ms) or "").strip()
        if not text:
            return []
        if selectors.splitter:
            return [part.strip() for part in text.split(selectors.splitter) if part.strip()]
        return [text]
