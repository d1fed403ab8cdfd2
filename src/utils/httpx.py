"""HTTP client utilities for the external sold-listings source."""

import logging
import os
import random
from typing import Any, Dict, Optional

import httpx
from dotenv import load_dotenv
from tenacity import (
    RetryError,
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from src.utils.errors import UpstreamSourceError
from src.utils.logger import httpx_logger as logger

load_dotenv()

# Disable verbose httpx logging to prevent spam
logging.getLogger("httpx").setLevel(logging.WARNING)

LISTING_SOURCE_URL = os.environ.get("LISTING_SOURCE_URL")
LISTING_SOURCE_API_KEY = os.environ.get("LISTING_SOURCE_API_KEY")

USER_AGENTS = [
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/121.0.0.0 Safari/537.36",
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/605.1.15 (KHTML, like Gecko) Version/17.2 Safari/605.1.15",
    "Mozilla/5.0 (X11; Linux x86_64; rv:123.0) Gecko/20100101 Firefox/123.0",
]

DEFAULT_HEADERS = {
    "Accept": "application/json",
    "Accept-Language": "en-US,en;q=0.9",
    "Accept-Encoding": "gzip, deflate, br",
    "Connection": "keep-alive",
}

# Responses worth retrying; anything else in 4xx is the caller's fault
RETRYABLE_STATUS = (429, 500, 502, 503, 504)


def get_default_headers(api_key: Optional[str] = None) -> dict:
    headers = dict(DEFAULT_HEADERS)
    headers["User-Agent"] = random.choice(USER_AGENTS)
    key = api_key or LISTING_SOURCE_API_KEY
    if key:
        headers["Authorization"] = f"Bearer {key}"
    return headers


@retry(
    stop=stop_after_attempt(3),
    wait=wait_exponential(min=0.5, max=4),
    retry=retry_if_exception_type(httpx.HTTPError),
)
async def _get_json_with_retry(
    url: str,
    params: Dict[str, Any],
    headers: Dict[str, str],
    request_timeout: float,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> Any:
    async with httpx.AsyncClient(
        headers=headers,
        follow_redirects=True,
        timeout=httpx.Timeout(float(request_timeout)),
        transport=transport,
    ) as client:
        req = client.build_request("GET", url, params=params)
        logger.info(f"🔍 Fetching listings: {req.url}")
        response = await client.send(req)
        if response.status_code in RETRYABLE_STATUS:
            logger.warning(f"⚠️ Listing source returned {response.status_code}, retrying")
        response.raise_for_status()
        return response.json()


async def httpx_get_json(
    url: str,
    params: Optional[Dict[str, Any]] = None,
    headers: Optional[Dict[str, str]] = None,
    *,
    request_timeout: float = 10.0,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> Any:
    """
    GET a JSON document, retried up to 3 times with exponential backoff.

    Raises:
        UpstreamSourceError: the source kept failing (unreachable, blocked or rate limited).
    """
    try:
        return await _get_json_with_retry(
            url,
            params or {},
            headers or get_default_headers(),
            request_timeout,
            transport,
        )
    except RetryError as e:
        cause = e.last_attempt.exception()
        logger.error(f"❌ Listing source failed after retries: {cause}")
        raise UpstreamSourceError(
            "Listing source unavailable", {"url": url, "cause": str(cause)}
        ) from cause
