"""
GCM-style push sender for Android devices.

Posts data messages to the GCM/FCM legacy HTTP endpoint. Unavailable
responses and transport failures are retried with exponential backoff;
per-device errors reported by the provider (e.g. NotRegistered) are
returned in the result, not raised.
"""

import random
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

import httpx

from mobile_backend.src.utils.logging_config import get_logger


logger = get_logger("services")

# Initial retry delay, doubled after each attempt
BACKOFF_INITIAL_DELAY = 1.0
MAX_BACKOFF_DELAY = 1024.0

_RETRIABLE_ERRORS = frozenset({"Unavailable", "InternalServerError"})


class GcmSendError(Exception):
    """Raised when a message could not be delivered to the provider."""

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        retriable: bool = True,
    ):
        self.status_code = status_code
        self.retriable = retriable
        super().__init__(message)


@dataclass
class GcmResult:
    """
    Outcome of one message.

    Attributes:
        message_id: Provider message id (None on failure)
        error_code: Provider error name, e.g. "NotRegistered"
        canonical_registration_id: Replacement registration id, if any
    """
    message_id: Optional[str] = None
    error_code: Optional[str] = None
    canonical_registration_id: Optional[str] = None

    @property
    def success(self) -> bool:
        return self.message_id is not None


class GcmSender:
    """
    Sends data messages to single registration ids.

    Usage:
        >>> sender = GcmSender(api_key, url)
        >>> result = sender.send({"subId": "abc:query:q1"}, "abc", retries=3)
        >>> result.success
    """

    def __init__(
        self,
        api_key: str,
        url: str,
        client: Optional[httpx.Client] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        if not api_key:
            raise ValueError("api_key cannot be empty")
        self.api_key = api_key
        self.url = url
        self._client = client or httpx.Client(timeout=10.0)
        self._sleep = sleep

    def close(self) -> None:
        self._client.close()

    def send(self, data: Dict[str, Any], registration_id: str, retries: int = 3) -> GcmResult:
        """
        Send a message, retrying up to ``retries`` times when the provider
        is unavailable.

        Raises:
            GcmSendError: If no attempt reached the provider successfully
        """
        delay = BACKOFF_INITIAL_DELAY
        attempt = 0
        while True:
            attempt += 1
            try:
                result = self._send_no_retry(data, registration_id)
            except GcmSendError as e:
                if not e.retriable or attempt > retries:
                    raise
                logger.debug(
                    "GCM send failed, retrying",
                    extra={"attempt": attempt, "error": str(e)}
                )
            else:
                if result.error_code not in _RETRIABLE_ERRORS or attempt > retries:
                    return result
                logger.debug(
                    "GCM provider unavailable, retrying",
                    extra={"attempt": attempt, "error_code": result.error_code}
                )

            self._sleep(delay / 2 + random.uniform(0, delay))
            delay = min(delay * 2, MAX_BACKOFF_DELAY)

    def _send_no_retry(self, data: Dict[str, Any], registration_id: str) -> GcmResult:
        try:
            response = self._client.post(
                self.url,
                json={"to": registration_id, "data": data},
                headers={"Authorization": f"key={self.api_key}"},
            )
        except httpx.HTTPError as e:
            raise GcmSendError(f"GCM request failed: {e}") from e

        if response.status_code >= 500:
            raise GcmSendError(
                f"GCM service unavailable (HTTP {response.status_code})",
                status_code=response.status_code,
            )
        if response.status_code != 200:
            raise GcmSendError(
                f"GCM rejected the request (HTTP {response.status_code})",
                status_code=response.status_code,
                retriable=False,
            )

        try:
            body = response.json()
            entry = body["results"][0]
        except (ValueError, KeyError, IndexError, TypeError) as e:
            raise GcmSendError(
                f"Unexpected GCM response: {response.text[:200]}",
                retriable=False,
            ) from e

        return GcmResult(
            message_id=entry.get("message_id"),
            error_code=entry.get("error"),
            canonical_registration_id=entry.get("registration_id"),
        )
