"""Submit -> poll -> fetch-result state machine for queue-based providers.

States::

    SUBMITTING -> POLLING -> COMPLETED
                          -> FAILED      (provider reported failure)
                          -> TIMED_OUT   (attempt ceiling reached)
                          -> EXHAUSTED   (too many consecutive poll errors)

All counters live on the ``QueueHandle`` so the schedule and thresholds can be
checked step by step. The only suspension point is ``sleep`` before each poll.
"""

import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, Optional

import requests

from common.errors import (
    PollExhaustedError,
    PollTimeoutError,
    ProtocolError,
    ProviderError,
    ProviderJobFailedError,
)
from worker.fal_client import FalClient, read_error_detail
from worker.resolver import ResponseImageResolver, find_image

logger = logging.getLogger(__name__)

MAX_ATTEMPTS = 120
MAX_CONSECUTIVE_ERRORS = 5

STATUS_COMPLETED = "COMPLETED"
STATUS_FAILED = "FAILED"


class PollState(str, Enum):
    SUBMITTING = "SUBMITTING"
    POLLING = "POLLING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    TIMED_OUT = "TIMED_OUT"
    EXHAUSTED = "EXHAUSTED"


def poll_delay(attempt: int) -> float:
    """Seconds to wait before poll ``attempt`` (1-based)."""
    if attempt <= 6:
        return 2.0
    if attempt <= 20:
        return 3.0
    return 5.0


@dataclass
class QueueHandle:
    operation: str
    endpoint: str
    request_id: Optional[str] = None
    status_url: Optional[str] = None
    response_url: Optional[str] = None
    state: PollState = PollState.SUBMITTING
    attempts: int = 0
    consecutive_errors: int = 0
    last_error: str = ""


def _failure_detail(status: Dict[str, Any]) -> str:
    for key in ("error", "detail", "logs"):
        value = status.get(key)
        if not value:
            continue
        if isinstance(value, list):
            # fal logs are [{"message": ...}, ...]
            return "\n".join(str(v.get("message", v)) if isinstance(v, dict) else str(v) for v in value)
        return str(value)
    return ""


class QueuePoller:
    def __init__(
        self,
        client: FalClient,
        resolver: ResponseImageResolver,
        sleep: Callable[[float], None] = time.sleep,
        max_attempts: int = MAX_ATTEMPTS,
        max_consecutive_errors: int = MAX_CONSECUTIVE_ERRORS,
        delay: Callable[[int], float] = poll_delay,
    ):
        self.client = client
        self.resolver = resolver
        self.sleep = sleep
        self.max_attempts = max_attempts
        self.max_consecutive_errors = max_consecutive_errors
        self.delay = delay

    def run(self, endpoint: str, body: Dict[str, Any], operation: str) -> bytes:
        handle = self.submit(endpoint, body, operation)
        result = self.wait(handle)
        return self.resolver.resolve(result, operation)

    # ---------- SUBMITTING ----------

    def submit(self, endpoint: str, body: Dict[str, Any], operation: str) -> QueueHandle:
        handle = QueueHandle(operation=operation, endpoint=endpoint)
        queue_url = self.client.queue_url(endpoint)
        data = self.client.post_json(queue_url, body, operation)

        request_id = data.get("request_id")
        status_url = data.get("status_url")
        if not request_id and not status_url:
            raise ProtocolError("queue response missing status handle")

        base = f"{queue_url}/requests/{request_id}" if request_id else None
        handle.request_id = request_id
        handle.status_url = status_url or f"{base}/status"
        handle.response_url = data.get("response_url") or base
        handle.state = PollState.POLLING
        logger.info(f"{operation}: queued request_id={request_id} status_url={handle.status_url}")
        return handle

    # ---------- POLLING ----------

    def wait(self, handle: QueueHandle) -> Dict[str, Any]:
        while True:
            result = self.step(handle)
            if result is not None:
                return result

    def step(self, handle: QueueHandle) -> Optional[Dict[str, Any]]:
        """One wait-then-poll step. Returns the result payload once COMPLETED."""
        if handle.state is not PollState.POLLING:
            raise ProtocolError(f"cannot poll {handle.operation} in state {handle.state.value}")

        if handle.attempts >= self.max_attempts:
            handle.state = PollState.TIMED_OUT
            raise PollTimeoutError(handle.operation, handle.attempts)

        handle.attempts += 1
        self.sleep(self.delay(handle.attempts))

        status = self._check_status(handle)
        if status is None:
            if handle.consecutive_errors >= self.max_consecutive_errors:
                handle.state = PollState.EXHAUSTED
                raise PollExhaustedError(handle.operation, handle.consecutive_errors, handle.last_error)
            return None

        handle.consecutive_errors = 0
        value = str(status.get("status", "")).upper()
        logger.debug(f"{handle.operation}: attempt {handle.attempts} status={value}")

        if value == STATUS_COMPLETED:
            handle.state = PollState.COMPLETED
            return self._result(handle, status)
        if value == STATUS_FAILED:
            handle.state = PollState.FAILED
            raise ProviderJobFailedError(handle.operation, _failure_detail(status))
        return None

    def _poll_error(self, handle: QueueHandle, message: str) -> None:
        handle.consecutive_errors += 1
        handle.last_error = message
        logger.warning(
            f"{handle.operation}: poll attempt {handle.attempts} failed "
            f"({handle.consecutive_errors}/{self.max_consecutive_errors}): {message}"
        )
        return None

    def _check_status(self, handle: QueueHandle) -> Optional[Dict[str, Any]]:
        try:
            resp = self.client.get(handle.status_url)
        except requests.RequestException as e:
            return self._poll_error(handle, f"transport error: {e}")
        if not resp.ok:
            return self._poll_error(handle, f"status HTTP {resp.status_code}")
        try:
            body = resp.json()
        except ValueError:
            return self._poll_error(handle, "unparseable status body")
        if not isinstance(body, dict):
            return self._poll_error(handle, "unexpected status body")
        return body

    # ---------- COMPLETED ----------

    def _result(self, handle: QueueHandle, status: Dict[str, Any]) -> Dict[str, Any]:
        embedded = status.get("response")
        if isinstance(embedded, dict):
            return embedded
        if find_image(status) is not None:
            return status

        response_url = status.get("response_url") or handle.response_url
        if not response_url:
            return status

        resp = self.client.get(response_url)
        if not resp.ok:
            raise ProviderError(resp.status_code, read_error_detail(resp))
        try:
            return resp.json()
        except ValueError as e:
            raise ProtocolError(f"{handle.operation} result is not JSON") from e
