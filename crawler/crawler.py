# crawler/crawler.py
import asyncio
import os

from dotenv import load_dotenv
from playwright.async_api import async_playwright

from .errors import BlockedResponseError, ProductPageError
from .frontier import CrawlRun, RequestRateLimiter
from .interceptor import ResourceInterceptor
from .logger import close_store_logger, get_store_logger
from .models import StoreConfig
from .page_scraper import PageScraper
from .utils import navigation_retry

load_dotenv()
CONCURRENCY = int(os.getenv("CRAWL_CONCURRENCY", "4"))
RETRIES = int(os.getenv("CRAWL_RETRIES", "3"))
MAX_REQUESTS = int(os.getenv("CRAWL_MAX_REQUESTS", "20000"))
MAX_REQUESTS_PER_MINUTE = int(os.getenv("CRAWL_MAX_REQUESTS_PER_MINUTE", "30"))
HANDLER_TIMEOUT_SECS = float(os.getenv("CRAWL_HANDLER_TIMEOUT_SECS", "180"))
NAVIGATION_TIMEOUT_SECS = float(os.getenv("CRAWL_NAVIGATION_TIMEOUT_SECS", "120"))
PRODUCT_CHECKS = int(os.getenv("CRAWL_PRODUCT_CHECKS", "10"))
PRODUCT_CHECK_INTERVAL_SECS = float(os.getenv("CRAWL_PRODUCT_CHECK_INTERVAL_SECS", "3"))
HEADLESS = os.getenv("CRAWL_HEADLESS", "true").lower() != "false"

SCROLL_ITERATIONS = 10
SCROLL_PAUSE_SECS = 3

BLOCKED_STATUS_CODES = frozenset([401, 403, 429])

USER_AGENT = (
    "Mozilla/5.0 (X11; Linux x86_64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/124.0.0.0 Safari/537.36"
)

BROWSER_ARGS = [
    "--no-sandbox",
    "--disable-setuid-sandbox",
    "--disable-accelerated-2d-canvas",
    "--disable-gpu",
    "--no-pings",
    "--no-zygote",
    "--disable-application-cache",
    "--disable-offline-load-stale-cache",
    "--disable-gpu-shader-disk-cache",
    "--disable-web-security",
    "--disable-translate",
    "--disable-session-crashed-bubble",
    "--no-first-run",
    "--noerrdialogs",
]


class WebshopCrawler:
    def __init__(
        self,
        store: StoreConfig,
        batch_timestamp,
        concurrency=CONCURRENCY,
        retries=RETRIES,
        max_requests=MAX_REQUESTS,
        max_requests_per_minute=MAX_REQUESTS_PER_MINUTE,
        handler_timeout=HANDLER_TIMEOUT_SECS,
        navigation_timeout=NAVIGATION_TIMEOUT_SECS,
        product_checks=PRODUCT_CHECKS,
        product_check_interval=PRODUCT_CHECK_INTERVAL_SECS,
        scroll_pause=SCROLL_PAUSE_SECS,
        retry_wait=None,
    ):
        self.store = store
        self.batch_timestamp = batch_timestamp
        self.concurrency = max(1, concurrency)
        self.retries = retries
        self.max_requests = max_requests
        self.max_requests_per_minute = max_requests_per_minute
        self.handler_timeout = handler_timeout
        self.navigation_timeout = navigation_timeout
        self.product_checks = max(1, product_checks)
        self.product_check_interval = product_check_interval
        self.scroll_pause = scroll_pause
        self.retry_wait = retry_wait
        self.scraper = PageScraper(
            store.selectors, store.sanitizers, store.category_ban_list
        )
        self.log = get_store_logger(store.name)

    async def crawl_site(self):
        """
        Crawl the store's site in a headless Chromium and return the run.

        Launches Playwright, hands the browser to run() and closes it
        afterwards, whatever happened during the crawl.

        Returns:
            CrawlRun: Final state of the crawl; `run.snapshots()` holds every
                product found, also when the request budget cut the crawl short
        """
        async with async_playwright() as playwright:
            browser = await playwright.chromium.launch(headless=HEADLESS, args=BROWSER_ARGS)
            try:
                return await self.run(browser)
            finally:
                await browser.close()

    async def run(self, browser):
        """
        Process the frontier with a pool of browser sessions until it is empty.

        Each worker owns one browser context, so cookies set during a visit
        (and its retries) stay with that session. All contexts share one
        ResourceInterceptor and one RequestRateLimiter.

        Args:
            browser (playwright.async_api.Browser): A launched browser

        Returns:
            CrawlRun: The finished run with products and counters

        Process:
            1. Queues the start URL
            2. Opens `concurrency` contexts with request interception
            3. Workers take targets until the queue is drained; once the
               request budget is spent, remaining targets are dropped
            4. Logs a summary, then closes contexts, drops the queue and
               closes the store's log file, also when the crawl fails
        """
        self.log = get_store_logger(self.store.name, self.batch_timestamp)
        run = CrawlRun(
            store=self.store,
            seed_url=self.store.start_url,
            max_requests=self.max_requests,
        )
        interceptor = ResourceInterceptor(self.store.start_url, log=self.log)
        limiter = RequestRateLimiter(self.max_requests_per_minute)
        run.add_seed(self.store.start_url)

        contexts = []
        workers = []
        try:
            for _ in range(self.concurrency):
                context = await browser.new_context(
                    user_agent=USER_AGENT, ignore_https_errors=True
                )
                await context.route("**/*", interceptor.handle)
                contexts.append(context)
            workers = [
                asyncio.create_task(self._worker(run, context, limiter))
                for context in contexts
            ]
            await run.queue.join()
            self._log_summary(run, interceptor)
        finally:
            for worker in workers:
                worker.cancel()
            await asyncio.gather(*workers, return_exceptions=True)
            try:
                for context in contexts:
                    await context.close()
            finally:
                run.drop()
                close_store_logger(self.log)
        return run

    async def _worker(self, run, context, limiter):
        while True:
            target = await run.queue.get()
            try:
                if run.mark_active(target):
                    await self._process_target(run, context, limiter, target)
            except Exception:
                self.log.exception(f"Unexpected error while processing {target.url}")
            finally:
                run.queue.task_done()

    async def _process_target(self, run, context, limiter, target):
        def before_retry(retry_state):
            run.mark_retry(target)
            self.log.warning(
                f"Retrying {target.url} (retry {target.retry_count}/{self.retries}): "
                f"{retry_state.outcome.exception()}"
            )

        retry_kwargs = {"before_sleep": before_retry}
        if self.retry_wait is not None:
            retry_kwargs["wait"] = self.retry_wait

        try:
            async for attempt in navigation_retry(self.retries + 1, **retry_kwargs):
                with attempt:
                    if attempt.retry_state.attempt_number > 1:
                        run.mark_active(target, retry=True)
                    await limiter.acquire()
                    await asyncio.wait_for(
                        self.handle_request(run, context, target),
                        timeout=self.handler_timeout,
                    )
        except Exception as e:
            run.mark_failed(target)
            self.log.info(f"Request {target.url} failed too many times: {e!r}")
        else:
            run.mark_succeeded(target)
        finally:
            # an extraction counts once, however many attempts the URL took
            run.commit_extraction(target)

    async def handle_request(self, run, context, target):
        """
        Visit one URL: extract the product if it is a product page, then queue its links.

        Raises on navigation problems (timeouts, network errors, blocked
        responses) so the caller can retry. Extraction errors never escape.
        """
        page = await context.new_page()
        try:
            response = await page.goto(
                target.url,
                wait_until="load",
                timeout=self.navigation_timeout * 1000,
            )
            if response is not None and response.status in BLOCKED_STATUS_CODES:
                raise BlockedResponseError(target.url, response.status)

            container = await self.find_product_container(page)
            if container is not None:
                await self._extract_product(target, page, container)
            else:
                self.log.info(f"url is not a product page: {page.url}")

            if self.store.menu_clicker and target.url == run.seed_url:
                await self._click_menu(page)
            if self.store.scroll_to_bottom:
                await self.scroll_to_bottom(page)

            links = await self.harvest_links(page)
            added = run.enqueue(links, base_url=page.url)
            self.log.debug(f"Queued {len(added)} of {len(links)} link(s) from {page.url}")
        finally:
            await page.close()

    async def _match_product_container(self, page):
        try:
            locator = page.locator(self.store.selectors.product_page)
            if await locator.count() == 0:
                return None
            if self.store.product_page_identifier not in await page.content():
                return None
            return locator.first
        except Exception as e:
            self.log.debug(f"Error looking for product container on {page.url}: {e}")
            return None

    async def find_product_container(self, page):
        """Poll for the product container; client-rendered shops fill it in late."""
        for check in range(self.product_checks):
            container = await self._match_product_container(page)
            if container is not None:
                return container
            if check + 1 < self.product_checks:
                await asyncio.sleep(self.product_check_interval)
        return None

    async def _extract_product(self, target, page, container):
        self.log.debug(f"processing url: {page.url}")
        try:
            target.extraction = await self.scraper.scrape_product_page(
                container, page.url, self.log
            )
        except ProductPageError as e:
            target.extraction = e
            self.log.error(f"Error processing product from url {page.url}: {e}")
        except Exception as e:
            target.extraction = e
            self.log.exception(f"Error processing product from url {page.url}")

    async def _click_menu(self, page):
        try:
            await page.locator(self.store.menu_clicker).click(timeout=5000)
        except Exception as e:
            self.log.error(f"Error clicking menu {self.store.menu_clicker}: {e}")

    async def scroll_to_bottom(self, page):
        """Scroll until the page stops growing, at most SCROLL_ITERATIONS times."""
        height = await page.evaluate("() => document.documentElement.scrollHeight")
        for _ in range(SCROLL_ITERATIONS):
            await page.evaluate(
                "(h) => window.scrollTo({top: h, behavior: 'instant'})", height
            )
            await asyncio.sleep(self.scroll_pause)
            new_height = await page.evaluate(
                "() => document.documentElement.scrollHeight"
            )
            if new_height <= height:
                break
            height = new_height

    async def harvest_links(self, page):
        hrefs = []
        for link in await page.locator("a[href]").all():
            try:
                href = await link.get_attribute("href")
            except Exception as e:
                self.log.debug(f"Could not read link on {page.url}: {e}")
                continue
            if href:
                hrefs.append(href)
        return hrefs

    def _log_summary(self, run, interceptor):
        self.log.info(f"Crawl of store {self.store.name} completed.")
        self.log.info(f"Total requests: {run.total_requests}")
        self.log.info(f"Total processed: {run.total_processed}")
        self.log.info(f"Total errored: {run.total_errored}")
        self.log.info(f"Total failed requests: {run.total_failed}")
        for name in (
            "description",
            "attributes",
            "image",
            "brand",
            "name",
            "in_stock",
            "categories",
        ):
            self.log.info(f"{name} errors: {run.field_errors[name]}")
        self.log.info(f"Cached scripts: {len(interceptor.cache)}")
