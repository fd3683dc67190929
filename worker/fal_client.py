"""HTTP transport for fal.ai provider calls.

Synchronous operations POST to ``fal.run``; queue-based ones submit to
``queue.fal.run`` and are then polled with GET. Both use the same headers and
the same ``Key`` authorization scheme.
"""

import logging
from typing import Any, Dict, Optional

import requests

from common.config import FAL_API_KEY, FAL_QUEUE_BASE, FAL_REQUEST_TIMEOUT, FAL_RUN_BASE
from common.errors import ConfigurationError, ProviderError

logger = logging.getLogger(__name__)


def read_error_detail(response: requests.Response) -> str:
    """Best-effort diagnostic text from a failed response."""
    try:
        return response.text.strip()
    except (requests.RequestException, ValueError):
        return ""


class FalClient:
    def __init__(
        self,
        api_key: Optional[str] = FAL_API_KEY,
        session: Optional[requests.Session] = None,
        run_base: str = FAL_RUN_BASE,
        queue_base: str = FAL_QUEUE_BASE,
        timeout: float = FAL_REQUEST_TIMEOUT,
    ):
        self._api_key = api_key
        self.session = session or requests.Session()
        self.run_base = run_base.rstrip("/")
        self.queue_base = queue_base.rstrip("/")
        self.timeout = timeout

    def run_url(self, endpoint: str) -> str:
        return f"{self.run_base}/{endpoint}"

    def queue_url(self, endpoint: str) -> str:
        return f"{self.queue_base}/{endpoint}"

    def headers(self) -> Dict[str, str]:
        if not self._api_key:
            raise ConfigurationError("Missing FAL_API_KEY")
        return {
            "Content-Type": "application/json",
            "Accept": "application/json",
            "Authorization": f"Key {self._api_key}",
        }

    def post_json(self, url: str, body: Dict[str, Any], operation: str) -> Dict[str, Any]:
        """POST ``body`` and return the parsed JSON reply.

        A non-success status raises ProviderError carrying whatever body text
        the provider sent back.
        """
        headers = self.headers()
        logger.debug(f"POST {url} ({operation})")
        resp = self.session.post(url, json=body, headers=headers, timeout=self.timeout)
        if not resp.ok:
            detail = read_error_detail(resp)
            logger.error(f"{operation} provider error: status={resp.status_code} details={detail!r}")
            raise ProviderError(resp.status_code, detail)
        try:
            return resp.json()
        except ValueError as e:
            raise ProviderError(resp.status_code, message=f"fal.run returned non-JSON body for {operation}") from e

    def get(self, url: str) -> requests.Response:
        """GET with provider headers; the caller interprets the status."""
        return self.session.get(url, headers=self.headers(), timeout=self.timeout)
