"""
JSON-over-HTTP access for the Nominatim geocoder.

A call makes a single GET unless the caller asks for more attempts. Extra
attempts only cover connection failures and timeouts; an error status from
the server is raised straight away as HTTPError.
"""

import httpx
from loguru import logger
from tenacity import Retrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from pipeline.config import settings


RETRYABLE_ERRORS = (httpx.TimeoutException, httpx.ConnectError)


class HTTPError(Exception):
    """Upstream answered with an error status."""

    def __init__(self, message: str, status_code: int | None = None, retry_after: str | None = None):
        super().__init__(message)
        self.status_code = status_code
        self.retry_after = retry_after


class RateLimitError(HTTPError):
    """Upstream answered 429 (Nominatim allows about one request per second)."""


def _get(client: httpx.Client, url: str, params: dict | None) -> httpx.Response:
    response = client.get(url, params=params)

    if response.status_code == 429:
        retry_after = response.headers.get("Retry-After")
        raise RateLimitError(f"Rate limited by {url}", status_code=429, retry_after=retry_after)
    if response.status_code >= 400:
        raise HTTPError(f"HTTP {response.status_code} for {url}", status_code=response.status_code)
    return response


def fetch_with_retry(
    url: str,
    params: dict | None = None,
    timeout: float | None = None,
    attempts: int = 1,
) -> httpx.Response:
    """
    GET `url` with the geocoder's User-Agent.

    With `attempts` above one, connection failures and timeouts are retried
    with exponential back-off; the last one is re-raised.
    """
    retrying = Retrying(
        stop=stop_after_attempt(max(attempts, 1)),
        wait=wait_exponential(multiplier=0.5, max=5),
        retry=retry_if_exception_type(RETRYABLE_ERRORS),
        reraise=True,
    )
    headers = {"User-Agent": settings.geocode.geocode_user_agent, "Accept": "application/json"}

    with httpx.Client(
        timeout=timeout or settings.geocode.geocode_timeout,
        headers=headers,
        follow_redirects=True,
    ) as client:
        response = retrying(_get, client, url, params)

    logger.debug(f"GET {url} -> {response.status_code}")
    return response
