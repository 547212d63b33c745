# crawler/errors.py


class ConfigurationError(Exception):
    """Raised when the run cannot start: missing connection string or an invalid store document."""


class ProductPageError(Exception):
    """A product page that cannot yield a snapshot (missing SKU or price)."""


class InvalidSkuError(ProductPageError):
    pass


class PriceNotFoundError(ProductPageError):
    pass


class BlockedResponseError(Exception):
    """Navigation answered with a status that signals the crawler was blocked."""

    def __init__(self, url, status):
        super().__init__(f"Request to {url} was blocked with status {status}")
        self.url = url
        self.status = status


class InvalidSnapshotError(Exception):
    """A snapshot the price history engine refuses to store."""
