# tests/conftest.py
import asyncio
import sys
import os

ROOT_DIR = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
sys.path.insert(0, ROOT_DIR)

from bson import ObjectId
import pytest
from typing import List, Dict, Any
from bs4 import BeautifulSoup
from pymongo.errors import PyMongoError

from crawler.models import StoreConfig


# ---------------------------------------------------------------------------
# Mongo doubles
# ---------------------------------------------------------------------------


class FakeCursor:
    def __init__(self, docs: List[Dict[str, Any]]):
        self._docs = list(docs)
        self._limit = None

    def sort(self, order):
        field, direction = order[0]
        self._docs.sort(key=lambda d: d.get(field, None), reverse=(direction < 0))
        return self

    def limit(self, n: int):
        self._limit = n
        return self

    async def to_list(self, length=None):
        """
        Return copies of the matched documents.

        `length` is accepted for Motor compatibility and ignored; only
        limit() restricts the number of returned documents.
        """
        return [dict(d) for d in self._docs[: self._limit]]


class FakeUpdateResult:
    def __init__(self, matched_count, modified_count, upserted_id=None):
        self.matched_count = matched_count
        self.modified_count = modified_count
        self.upserted_id = upserted_id


class FakeInsertManyResult:
    def __init__(self, inserted_ids):
        self.inserted_ids = inserted_ids


class FakeCollection:
    """
    In-memory stand-in for a Motor collection.

    Supports the subset of operations the price history engine and the
    store loader use: exact-match find/find_one (find_one with sort),
    insert_many and update_one with $set and upsert.

    Operations named in `fail_ops` raise PyMongoError, which lets tests
    check that one failing write group does not affect the others.
    """

    def __init__(self, docs=None):
        self.docs = list(docs or [])
        self.fail_ops = set()
        self.calls = []
        self.indexes = []
        for d in self.docs:
            if "_id" not in d:
                d["_id"] = ObjectId()

    def _matches(self, doc, q):
        return all(doc.get(k) == v for k, v in (q or {}).items())

    def _check(self, op):
        self.calls.append(op)
        if op in self.fail_ops:
            raise PyMongoError(f"{op} failed")

    def find(self, q=None):
        return FakeCursor([d for d in self.docs if self._matches(d, q)])

    async def create_index(self, keys, **kwargs):
        self.indexes.append((keys, kwargs))
        return "_".join(f"{k}_{d}" for k, d in keys)

    async def find_one(self, q=None, sort=None):
        """
        Return a copy of the first document matching `q`.

        When `sort` is given, as [(field, direction)], matches are ordered by
        the first key before the first one is returned, which is how the
        updater finds the interval with the latest end.
        """
        self._check("find_one")
        matched = [d for d in self.docs if self._matches(d, q)]
        if sort:
            field, direction = sort[0]
            matched.sort(key=lambda d: d.get(field), reverse=(direction < 0))
        return dict(matched[0]) if matched else None

    async def insert_many(self, docs, ordered=True):
        self._check("insert_many")
        ids = []
        for doc in docs:
            doc.setdefault("_id", ObjectId())
            self.docs.append(dict(doc))
            ids.append(doc["_id"])
        return FakeInsertManyResult(ids)

    async def update_one(self, q, u, upsert=False):
        """
        Apply a $set to the first matching document.

        Returns a result reporting matched/modified counts; with `upsert`
        and no match, a new document built from the filter and the $set
        fields is inserted and its id reported as `upserted_id`.
        """
        self._check("update_one")
        changes = u.get("$set", {})
        for d in self.docs:
            if self._matches(d, q):
                modified = any(d.get(k) != v for k, v in changes.items())
                d.update(changes)
                return FakeUpdateResult(1, 1 if modified else 0)
        if upsert:
            doc = {**q, **changes, "_id": ObjectId()}
            self.docs.append(doc)
            return FakeUpdateResult(0, 0, doc["_id"])
        return FakeUpdateResult(0, 0)


class FakeDB:
    def __init__(self, price_changes=None, product_metadata=None, stores=None):
        self.collections = {
            "priceChanges": FakeCollection(price_changes),
            "productMetadata": FakeCollection(product_metadata),
            "stores": FakeCollection(stores),
        }

    def __getitem__(self, name):
        return self.collections[name]

    @property
    def price_changes(self):
        return self.collections["priceChanges"]

    @property
    def product_metadata(self):
        return self.collections["productMetadata"]


# ---------------------------------------------------------------------------
# Playwright doubles
# ---------------------------------------------------------------------------


class FakeLocatorError(Exception):
    pass


class FakeLocator:
    """
    Lazily evaluated CSS query over a BeautifulSoup tree.

    Mirrors the async Locator methods the crawler and page scraper call.
    Single-element reads (text_content, inner_html, get_attribute, click)
    fail when zero or several elements match, like Playwright's strict mode.
    """

    def __init__(self, page, resolve):
        self.page = page
        self._resolve = resolve

    def _elements(self):
        return self._resolve()

    def locator(self, selector):
        parent = self

        def resolve():
            found, ids = [], set()
            for el in parent._elements():
                for match in el.select(selector):
                    if id(match) not in ids:
                        ids.add(id(match))
                        found.append(match)
            return found

        return FakeLocator(self.page, resolve)

    @property
    def first(self):
        return FakeLocator(self.page, lambda: self._elements()[:1])

    def filter(self, has_text=None):
        def resolve():
            els = self._elements()
            if has_text is None:
                return els
            return [el for el in els if has_text.lower() in el.get_text().lower()]

        return FakeLocator(self.page, resolve)

    def _single(self):
        els = self._elements()
        if not els:
            raise FakeLocatorError("Timeout: no element matches locator")
        if len(els) > 1:
            raise FakeLocatorError(f"strict mode violation: {len(els)} elements")
        return els[0]

    async def count(self):
        return len(self._elements())

    async def all(self):
        return [FakeLocator(self.page, lambda el=el: [el]) for el in self._elements()]

    async def text_content(self, timeout=None):
        return self._single().get_text()

    async def inner_html(self, timeout=None):
        return self._single().decode_contents()

    async def get_attribute(self, name, timeout=None):
        value = self._single().get(name)
        if isinstance(value, list):
            return " ".join(value)
        return value

    async def click(self, force=False, timeout=None):
        el = self._single()
        self.page.clicked.append(el)


class FakeResponse:
    def __init__(self, status):
        self.status = status


class FakeNavigationError(Exception):
    pass


class FakeSite:
    """
    Pages served to FakePage.goto, keyed by absolute URL.

    Values are HTML strings or (status, html) tuples; unknown URLs answer
    404 with an empty document. `failures[url] = n` makes the first n
    navigations to `url` raise; `delays[url]` is how many seconds loading
    `url` takes.
    """

    def __init__(self, pages):
        self.pages = dict(pages)
        self.failures = {}
        self.delays = {}
        self.visits = []

    def respond(self, url):
        self.visits.append(url)
        if self.failures.get(url, 0) > 0:
            self.failures[url] -= 1
            raise FakeNavigationError(f"net::ERR_CONNECTION_RESET at {url}")
        entry = self.pages.get(url, (404, "<html><body></body></html>"))
        if isinstance(entry, tuple):
            return entry
        return 200, entry


class FakePage:
    def __init__(self, site, html="<html><body></body></html>", url="about:blank"):
        self.site = site
        self.url = url
        self.soup = BeautifulSoup(html, "lxml")
        self.clicked = []
        self.closed = False
        self.scripts = []
        self.goto_timeouts = []

    async def goto(self, url, wait_until=None, timeout=None):
        self.goto_timeouts.append(timeout)
        status, html = self.site.respond(url)
        delay = self.site.delays.get(url, 0)
        if timeout and delay * 1000 > timeout:
            await asyncio.sleep(timeout / 1000)
            raise FakeNavigationError(f"Timeout {timeout}ms exceeded navigating to {url}")
        await asyncio.sleep(delay)
        self.url = url
        self.soup = BeautifulSoup(html, "lxml")
        return FakeResponse(status)

    async def wait_for_load_state(self, state="load"):
        return None

    def locator(self, selector):
        return FakeLocator(self, lambda: [self.soup]).locator(selector)

    async def content(self):
        return str(self.soup)

    async def evaluate(self, script, arg=None):
        self.scripts.append(script)
        if "scrollHeight" in script:
            return 1000
        return None

    async def close(self):
        self.closed = True


class FakeContext:
    def __init__(self, site, **options):
        self.site = site
        self.options = options
        self.routes = []
        self.pages = []
        self.closed = False

    async def route(self, pattern, handler):
        self.routes.append((pattern, handler))

    async def new_page(self):
        page = FakePage(self.site)
        self.pages.append(page)
        return page

    async def close(self):
        self.closed = True


class FakeBrowser:
    def __init__(self, site):
        self.site = site
        self.contexts = []

    async def new_context(self, **options):
        context = FakeContext(self.site, **options)
        self.contexts.append(context)
        return context

    async def close(self):
        pass


class FakeRequest:
    def __init__(self, url, resource_type):
        self.url = url
        self.resource_type = resource_type


class FakeAPIResponse:
    def __init__(self, url, status=200, headers=None, body=b""):
        self.url = url
        self.status = status
        self.headers = headers or {}
        self._body = body

    async def body(self):
        return self._body


class FakeRoute:
    """Records how the interceptor settled one request."""

    def __init__(self, url, resource_type, response=None, fetch_error=None):
        self.request = FakeRequest(url, resource_type)
        self.response = response
        self.fetch_error = fetch_error
        self.fulfilled = None
        self.continued = False
        self.aborted = False
        self.fetches = 0

    async def fulfill(self, **kwargs):
        self.fulfilled = kwargs

    async def continue_(self):
        self.continued = True

    async def abort(self):
        self.aborted = True

    async def fetch(self):
        self.fetches += 1
        if self.fetch_error is not None:
            raise self.fetch_error
        return self.response


# ---------------------------------------------------------------------------
# Store fixtures
# ---------------------------------------------------------------------------

SHOP = "https://shop.example.is"


def product_html(sku="AB-3000", price="9.990 kr.", old_price=None, links=()):
    old = f'<span class="price-old">{old_price}</span>' if old_price else ""
    anchors = "".join(f'<a href="{href}">link</a>' for href in links)
    return f"""
    <html><body>
      <div class="product" data-product-page="1">
        <h1 class="product-title">Acme Blender 3000</h1>
        <span class="brand"> Acme </span>
        <span class="sku">Vörunúmer: {sku}</span>
        {old}
        <span class="price">{price}</span>
        <img class="main-image" src="/images/ab3000.png">
        <div class="stock">Til á lager</div>
        <div class="description"><p>Powerful <b>blender</b></p><script>track()</script></div>
        <nav class="breadcrumbs">
          <a>Forsíða</a><a>Kitchen</a><a>Blenders</a><a>Blenders</a>
          <a>Acme Blender 3000</a><a>X</a>
        </nav>
        <div class="specs">
          <div class="spec-group">
            <h3>General</h3>
            <table>
              <tr><th>Power</th><td>1200W</td></tr>
              <tr><th>Color</th><td>Red</td></tr>
            </table>
          </div>
          <div class="spec-group">
            <h3>Dimensions</h3>
            <table>
              <tr><th>Height</th><td>40cm</td></tr>
              <tr><th>Weight</th><td>3kg</td></tr>
            </table>
          </div>
        </div>
        <button class="tab-toggle">Specs</button>
      </div>
      {anchors}
    </body></html>
    """


def listing_html(links):
    anchors = "".join(f'<a href="{href}">link</a>' for href in links)
    return f"<html><body><main>{anchors}</main></body></html>"


@pytest.fixture
def store_document():
    """
    Store document as kept in the `stores` collection.

    Settings live under `options`, the nested layout store documents use;
    StoreConfig flattens them on load.
    """
    return {
        "_id": ObjectId("65a000000000000000000001"),
        "name": "Acme Verslun",
        "type": "crawler",
        "scraper_enabled": True,
        "options": {
            "start_url": f"{SHOP}/",
            "product_page_identifier": "data-product-page",
            "sanitizers": [{"pattern": r"^Vörunúmer:\s*", "replacement": ""}],
            "url_blacklist": ["/karfa"],
            "selectors": {
                "product_page": ".product",
                "list_price": ".price",
                "old_price": ".price-old",
                "sku": ".sku",
                "name": ".product-title",
                "brand": ".brand",
                "image": ".main-image",
                "in_stock": ".stock",
                "in_stock_text": "á lager",
                "description": ".description",
                "clickers": [".tab-toggle"],
                "attributes": {
                    "table": ".specs",
                    "group": ".spec-group",
                    "group_name": "h3",
                    "attribute": "tr",
                    "label": "th",
                    "value": "td",
                },
                "categories": {"container": ".breadcrumbs", "item": "a"},
            },
        },
    }


@pytest.fixture
def store(store_document):
    return StoreConfig.model_validate(store_document)


@pytest.fixture
def fake_db():
    return FakeDB()
