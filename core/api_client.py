"""
Perp Agent Core: JSON API Client

Shared HTTP plumbing for the oracle, venue and wallet services.

Retries on:
- 429 (rate limit)
- 5xx (server errors)
- Network errors (timeout, connection)

Does NOT retry on:
- 4xx (except 429), raised as requests.HTTPError for the caller to translate

Exhausted retries surface as TransientFetchError so a cycle can abandon the
tick and try again on the next one.
"""

import logging
import random
import time
from typing import Any, Dict, Mapping, Optional

import requests

from core.exceptions import MalformedResponse, TransientFetchError

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_S = 10.0
DEFAULT_MAX_RETRIES = 3


def error_detail(response: Optional[requests.Response]) -> str:
    """Best-effort human message from an error response body."""
    if response is None:
        return ""
    try:
        payload = response.json()
    except ValueError:
        return (response.text or "").strip()[:500]
    if isinstance(payload, Mapping):
        for key in ("detail", "error", "message"):
            if payload.get(key):
                return str(payload[key])
    return str(payload)[:500]


class JsonApiClient:
    """Minimal JSON-over-HTTP client with bounded retries."""

    source = "api"

    def __init__(self, base_url: str, timeout: float = DEFAULT_TIMEOUT_S,
                 max_retries: int = DEFAULT_MAX_RETRIES,
                 headers: Optional[Dict[str, str]] = None,
                 session: Optional[requests.Session] = None):
        if not base_url:
            raise ValueError(f"{self.source}: base_url is required")
        self.base_url = base_url.rstrip("/")
        self.timeout = float(timeout)
        self.max_retries = max(1, int(max_retries))
        self.headers = {"Content-Type": "application/json", "Accept": "application/json"}
        if headers:
            self.headers.update(headers)
        # Left None so tests can patch requests.request at module level
        self._session = session

    def _url(self, endpoint: str) -> str:
        if not endpoint.startswith("/"):
            endpoint = "/" + endpoint
        return self.base_url + endpoint

    def _send(self, method: str, url: str, body: Optional[dict],
              query: Optional[Dict[str, Any]]) -> requests.Response:
        sender = self._session.request if self._session is not None else requests.request
        return sender(
            method,
            url,
            headers=self.headers,
            json=body,
            params=query,
            timeout=self.timeout,
        )

    def _req(self, method: str, endpoint: str, body: Optional[dict] = None,
             query: Optional[Dict[str, Any]] = None,
             max_retries: Optional[int] = None) -> Any:
        """
        Make an HTTP request and decode its JSON body, with exponential backoff.

        Raises:
            requests.HTTPError: 4xx other than 429 (not retried)
            TransientFetchError: retries exhausted, or the body is not JSON
        """
        attempts = self.max_retries if max_retries is None else max(1, int(max_retries))
        url = self._url(endpoint)
        last_exception: Optional[Exception] = None

        for attempt in range(attempts):
            try:
                response = self._send(method, url, body, query)
                response.raise_for_status()
                try:
                    return response.json()
                except ValueError as e:
                    raise MalformedResponse(f"{self.source} {endpoint}", e)

            except requests.exceptions.HTTPError as e:
                status_code = e.response.status_code if e.response is not None else 0

                if 400 <= status_code < 500 and status_code != 429:
                    if status_code == 404:
                        logger.debug(f"{self.source} 404: {endpoint} - {error_detail(e.response)}")
                    else:
                        logger.error(f"{self.source} client error: {status_code} - {error_detail(e.response)}")
                    raise

                if status_code == 429:
                    logger.warning(f"Rate limited (429) on {endpoint}, attempt {attempt + 1}/{attempts}")
                else:
                    logger.warning(f"Server error ({status_code}) on {endpoint}, attempt {attempt + 1}/{attempts}")
                last_exception = e

            except (requests.exceptions.Timeout, requests.exceptions.ConnectionError) as e:
                logger.warning(f"Network error on {endpoint}: {e}, attempt {attempt + 1}/{attempts}")
                last_exception = e

            if attempt < attempts - 1:
                backoff = (2 ** attempt) + random.uniform(0, 1)
                logger.info(f"Retrying in {backoff:.1f}s...")
                time.sleep(backoff)

        logger.error(f"All {attempts} attempts exhausted for {self.source} {endpoint}")
        raise TransientFetchError(f"{self.source} {endpoint}", last_exception)
