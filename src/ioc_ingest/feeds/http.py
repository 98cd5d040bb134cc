"""
HTTP client shared by all format handlers.

Wraps a requests.Session with the feed retry policy: bounded attempts,
exponential backoff, and no retries for client errors other than 429.
"""

import logging
import time
from typing import Callable, Dict, Optional

import requests

from ioc_ingest.core.config import IngestConfig
from ioc_ingest.core.errors import FetchError

logger = logging.getLogger(__name__)

BROWSER_HEADERS = {
    "Accept": "*/*",
    "Accept-Encoding": "gzip, deflate",
    "Accept-Language": "en-US,en;q=0.9",
    "Connection": "keep-alive",
    "Cache-Control": "no-cache",
}

INITIAL_BACKOFF_SECONDS = 2


class FeedClient:
    """
    GET with retries for feed downloads.

    Attempts are bounded by fetch_retry_attempts. Backoff starts at 2s
    and doubles after every failed attempt. 4xx responses other than 429
    fail immediately.
    """

    def __init__(
        self,
        config: Optional[IngestConfig] = None,
        session: Optional[requests.Session] = None,
        sleep: Callable[[float], None] = time.sleep
    ):
        """
        Initialize the feed client.

        Args:
            config: Ingestion configuration (retry attempts, timeout)
            session: Optional pre-built session (tests inject a mock)
            sleep: Sleep function used between attempts
        """
        self.config = config or IngestConfig()
        self.session = session or requests.Session()
        self.timeout = self.config.fetch_timeout_ms / 1000
        self.max_attempts = self.config.fetch_retry_attempts
        self.sleep = sleep

    def get(
        self,
        url: str,
        headers: Optional[Dict[str, str]] = None,
        params: Optional[Dict[str, str]] = None,
        attempts: Optional[int] = None
    ) -> requests.Response:
        """
        Fetch a URL, retrying transient failures.

        Args:
            url: URL to fetch
            headers: Extra headers, merged over the browser defaults
            params: Query string parameters
            attempts: Override for the configured attempt count

        Returns:
            The successful response (status 2xx-3xx)

        Raises:
            FetchError: On a non-retryable status or when attempts run out
        """
        max_attempts = attempts or self.max_attempts
        request_headers = {
            "User-Agent": self.config.user_agent,
            **BROWSER_HEADERS,
            **(headers or {}),
        }
        backoff = INITIAL_BACKOFF_SECONDS
        last_error: Optional[FetchError] = None

        for attempt in range(1, max_attempts + 1):
            try:
                response = self.session.get(
                    url,
                    headers=request_headers,
                    params=params,
                    timeout=self.timeout,
                    allow_redirects=True,
                )
            except requests.RequestException as e:
                last_error = FetchError(f"{url}: {e}", retryable=True)
            else:
                status = response.status_code
                if 200 <= status < 400:
                    return response
                if 400 <= status < 500 and status != 429:
                    logger.error(f"[FeedClient] {url} returned {status}. Skipping retries.")
                    raise FetchError(
                        f"{url} returned HTTP {status}",
                        status_code=status,
                        retryable=False
                    )
                last_error = FetchError(
                    f"{url} returned HTTP {status}",
                    status_code=status,
                    retryable=True
                )

            if attempt < max_attempts:
                logger.warning(
                    f"[Retry] {url} attempt {attempt} failed: {last_error}. "
                    f"Retrying in {backoff}s..."
                )
                self.sleep(backoff)
                backoff *= 2

        logger.error(f"[Retry] All {max_attempts} attempts failed for {url}")
        raise last_error

    def close(self):
        self.session.close()
