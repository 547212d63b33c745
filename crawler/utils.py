# crawler/utils.py
import logging
import math
import re
from urllib.parse import urlparse

from bs4 import BeautifulSoup
from tenacity import (
    AsyncRetrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)


def parse_price(text):
    """
    Turn a displayed price into an integer amount.

    Every non-digit character is dropped before parsing, so "12.990 kr."
    becomes 12990. Store prices are whole currency units, which is why
    separators are not interpreted as decimal points.

    Args:
        text (str or None): Price text as rendered on the page

    Returns:
        int or None: Parsed amount, or None when the text holds no digits
    """
    if not text:
        return None
    digits = re.sub(r"\D", "", text)
    if not digits:
        return None
    return int(digits)


def is_number(value):
    """True for real, finite numbers. Booleans are not prices."""
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return False
    return not math.isnan(value) and not math.isinf(value)


def strip_html(html):
    """
    Reduce an HTML fragment to its readable text.

    Script and style elements are removed entirely; remaining text nodes are
    joined with single spaces.

    Args:
        html (str): HTML markup, typically a description block's inner HTML

    Returns:
        str or None: Plain text, or None if nothing readable remains
    """
    if not html:
        return None
    soup = BeautifulSoup(html, "lxml")
    for tag in soup(["script", "style", "noscript", "iframe"]):
        tag.decompose()
    text = soup.get_text(" ", strip=True)
    return text or None


def token_from_url(url, delimiter, index):
    """
    Pick one token of a URL path split on `delimiter`.

    Args:
        url (str): Absolute page URL
        delimiter (str): String the path is split on
        index (str or int): "first", "last" or a zero-based position;
            negative positions count from the end

    Returns:
        str or None: The token, or None when the path has no such token
    """
    path = urlparse(url).path.strip("/")
    tokens = [t for t in path.split(delimiter) if t]
    if not tokens:
        return None
    if index == "first":
        return tokens[0]
    if index == "last":
        return tokens[-1]
    try:
        return tokens[index]
    except IndexError:
        return None


def navigation_retry(attempts=3, logger=None, **tenacity_kwargs):
    """
    Build an async retrying controller for page navigations.

    Args:
        attempts (int): Total number of tries, the first one included
        logger (logging.Logger, optional): Receives a warning before each
            retry sleep
        **tenacity_kwargs: Overrides for `wait`, e.g. `wait=wait_none()` in tests

    Returns:
        tenacity.AsyncRetrying: Use as `async for attempt in ...: with attempt:`

    Retry Behavior:
        - Stops after `attempts` tries and re-raises the last error
        - Waits with exponential backoff: min=1s, max=10s, multiplier=1
        - Retries on any Exception type
    """
    kwargs = {
        "stop": stop_after_attempt(attempts),
        "wait": wait_exponential(multiplier=1, min=1, max=10),
        "retry": retry_if_exception_type(Exception),
        "reraise": True,
    }
    if logger is not None:
        kwargs["before_sleep"] = before_sleep_log(logger, logging.WARNING)
    kwargs.update(tenacity_kwargs)
    return AsyncRetrying(**kwargs)
