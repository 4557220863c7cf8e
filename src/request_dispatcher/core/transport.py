"""
HTTP Transport Module

This module performs the single outbound call behind each dispatched index:
a JSON ``POST`` of ``{"index": n}`` to the configured endpoint.
"""

import logging
from typing import Any, Dict, Optional

import requests
from requests.adapters import HTTPAdapter

from request_dispatcher.io.schema import RequestPayload

logger = logging.getLogger(__name__)


class HttpTransport:
    """Posts call indexes to the remote service using a shared requests session."""

    def __init__(
        self,
        api_host: str,
        path: str = "api",
        timeout_seconds: float = 10.0,
        headers: Optional[Dict[str, str]] = None,
        pool_size: int = 10,
        session: Optional[requests.Session] = None,
    ):
        """
        Initialize the transport.

        Args:
            api_host: Base URL of the service (e.g. ``http://localhost:3000/``)
            path: Path appended to the host, as-is
            timeout_seconds: Per-request timeout
            headers: Extra headers sent with every request
            pool_size: Connection pool size, normally the concurrency cap
            session: Pre-built session (mainly for tests)
        """
        if not api_host:
            raise ValueError("API host not provided and API_HOST environment variable not set")

        self.api_host = api_host
        self.path = path
        self.endpoint = f"{api_host}{path}"
        self.timeout_seconds = timeout_seconds
        self.session = session or self._build_session(pool_size)
        if headers:
            self.session.headers.update(headers)

        logger.info(f"HTTP transport configured for endpoint: {self.endpoint}")

    @staticmethod
    def _build_session(pool_size: int) -> requests.Session:
        session = requests.Session()
        adapter = HTTPAdapter(pool_connections=1, pool_maxsize=max(1, pool_size))
        session.mount("http://", adapter)
        session.mount("https://", adapter)
        return session

    def post_index(self, index: int) -> Any:
        """
        Send one call and return the decoded JSON body.

        Raises:
            requests.HTTPError: Non-2xx response (``error.response`` is set)
            requests.RequestException: Connection-level failure or timeout
            ValueError: Body is not valid JSON
        """
        payload = RequestPayload(index=index).model_dump()
        response = self.session.post(self.endpoint, json=payload, timeout=self.timeout_seconds)
        response.raise_for_status()
        # raise_for_status lets 1xx/3xx through
        if not 200 <= response.status_code < 300:
            raise requests.HTTPError(
                f"{response.status_code} Unexpected status for url: {response.url}",
                response=response,
            )
        return response.json()

    def close(self) -> None:
        self.session.close()
