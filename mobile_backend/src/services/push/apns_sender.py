"""
APNS-style push sender for iOS devices.

Adapter over the APNS HTTP/2 provider API, authenticated with a client
certificate. One connection is kept open across batches and reopened
after a transport failure.

Per-device outcomes are reported as ``PushedNotification`` objects whose
``response`` carries the legacy APNS status code, so callers classify
results the same way whatever the transport:

    0   no error
    1   processing error
    2   missing device token
    3   missing topic
    4   missing payload
    5   invalid token size
    7   invalid payload size
    8   invalid token (the device must be removed)
    10  shutdown
    255 unknown

Tokens reported as invalid are recorded in the durable feedback channel
(``ApnsFeedbackStore``) once ``flush_pending_responses()`` has processed
them; ``feedback()`` drains that channel whichever process sent them.
"""

import json
import re
import ssl
import threading
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional

import httpx

from mobile_backend.src.config.settings import AppSettings
from mobile_backend.src.services.push.feedback_store import ApnsFeedbackStore
from mobile_backend.src.utils.logging_config import get_logger


logger = get_logger("services")

STATUS_OK = 0
STATUS_INVALID_TOKEN = 8
STATUS_UNKNOWN = 255

# APNS rejection reasons mapped to legacy status codes
_REASON_STATUS = {
    "BadDeviceToken": STATUS_INVALID_TOKEN,
    "Unregistered": STATUS_INVALID_TOKEN,
    "DeviceTokenNotForTopic": STATUS_INVALID_TOKEN,
    "MissingDeviceToken": 2,
    "MissingTopic": 3,
    "BadTopic": 3,
    "TopicDisallowed": 3,
    "PayloadEmpty": 4,
    "PayloadTooLarge": 7,
    "InternalServerError": 1,
    "ServiceUnavailable": 10,
    "Shutdown": 10,
}

_CREDENTIAL_REASONS = frozenset({
    "BadCertificate",
    "BadCertificateEnvironment",
    "ExpiredProviderToken",
    "InvalidProviderToken",
    "MissingProviderToken",
})

_TOKEN_PATTERN = re.compile(r"^[0-9a-fA-F]{64}$")


class ApnsCommunicationError(Exception):
    """Raised when the APNS gateway could not be reached."""
    pass


class ApnsCredentialsError(Exception):
    """Raised when the client certificate is missing, unreadable or rejected."""
    pass


@dataclass
class ResponsePacket:
    """Provider verdict for one notification."""
    status: int
    message: str = ""

    def is_valid_error_message(self) -> bool:
        return self.status != STATUS_OK


@dataclass
class PushedNotification:
    """
    One notification sent (or not) to one device.

    Attributes:
        device_token: Target device
        payload: The payload sent
        apns_id: Provider id of an accepted notification
        response: Error verdict; None when the notification was accepted
        exception: Local failure (e.g. malformed token) that prevented sending
    """
    device_token: str
    payload: Dict[str, Any]
    apns_id: Optional[str] = None
    response: Optional[ResponsePacket] = None
    exception: Optional[Exception] = field(default=None, repr=False)

    @property
    def successful(self) -> bool:
        return self.response is None and self.exception is None


class ApnsSender:
    """
    Sends payloads to lists of device tokens over APNS.

    Usage:
        >>> sender = ApnsSender(cert_path, key_path, topic, host, feedback_store=store)
        >>> payload = ApnsSender.create_payload("You receive a message", "abc:query:q1")
        >>> notifications = sender.send_payload(payload, ["a1b2..."])
        >>> sender.flush_pending_responses()
    """

    def __init__(
        self,
        cert_path: str,
        key_path: Optional[str],
        topic: str,
        host: str,
        transport: Optional[httpx.BaseTransport] = None,
        timeout: float = 10.0,
        feedback_store: Optional[ApnsFeedbackStore] = None,
    ):
        self.cert_path = cert_path
        self.key_path = key_path
        self.topic = topic
        self.host = host
        self.timeout = timeout
        self._transport = transport
        self._client: Optional[httpx.Client] = None
        self._pending: List[PushedNotification] = []
        self.feedback_store = feedback_store
        self._lock = threading.Lock()

    @classmethod
    def from_settings(
        cls,
        settings: AppSettings,
        feedback_store: Optional[ApnsFeedbackStore],
    ) -> "ApnsSender":
        return cls(
            settings.apns_cert_path,
            settings.apns_key_path,
            settings.apns_topic,
            settings.apns_host,
            feedback_store=feedback_store,
        )

    # ------------------------------------------------------------------
    # Connection
    # ------------------------------------------------------------------

    def _connect(self) -> httpx.Client:
        if self._client is not None:
            return self._client

        if self._transport is not None:
            self._client = httpx.Client(
                base_url=self.host,
                transport=self._transport,
                timeout=self.timeout,
            )
            return self._client

        if not self.cert_path:
            raise ApnsCredentialsError("No APNS client certificate configured")
        try:
            context = ssl.create_default_context()
            context.load_cert_chain(self.cert_path, self.key_path or None)
        except OSError as e:
            raise ApnsCredentialsError(f"Cannot load APNS certificate: {e}") from e

        self._client = httpx.Client(
            base_url=self.host,
            http2=True,
            verify=context,
            timeout=self.timeout,
        )
        return self._client

    def stop_connection(self) -> None:
        if self._client is not None:
            self._client.close()
            self._client = None

    # ------------------------------------------------------------------
    # Payloads
    # ------------------------------------------------------------------

    @staticmethod
    def create_payload(alert_message: str, hidden_message: str) -> Dict[str, Any]:
        """
        Build a payload with a visible alert and a hidden custom value.

        Raises:
            ValueError: If either message is empty
        """
        if not alert_message or not hidden_message:
            raise ValueError("Input arguments cannot be a null or an empty String")
        return {
            "aps": {"alert": alert_message},
            "hiddenMessage": hidden_message,
        }

    # ------------------------------------------------------------------
    # Sending
    # ------------------------------------------------------------------

    def send_payload(
        self,
        payload: Optional[Dict[str, Any]],
        device_tokens: Iterable[str],
    ) -> List[PushedNotification]:
        """
        Send one payload to each device.

        Malformed tokens yield a failed notification without a network
        call. Notifications are also queued for
        ``flush_pending_responses()``.

        Raises:
            ApnsCommunicationError: If the gateway could not be reached
                (the connection is closed first)
            ApnsCredentialsError: If the certificate is unusable or rejected
        """
        notifications: List[PushedNotification] = []
        if payload is None:
            return notifications

        client = self._connect()
        body = json.dumps(payload, separators=(",", ":"))
        for token in device_tokens:
            notification = PushedNotification(device_token=token, payload=payload)
            if not token or not _TOKEN_PATTERN.match(token):
                notification.exception = ValueError(f"Invalid device token format: {token!r}")
                notification.response = ResponsePacket(5, "Invalid token size")
            else:
                self._post(client, notification, body)
            notifications.append(notification)

        with self._lock:
            self._pending.extend(notifications)
        return notifications

    def _post(self, client: httpx.Client, notification: PushedNotification, body: str) -> None:
        headers = {
            "apns-push-type": "alert",
            "content-type": "application/json",
        }
        if self.topic:
            headers["apns-topic"] = self.topic

        try:
            response = client.post(
                f"/3/device/{notification.device_token}",
                content=body,
                headers=headers,
            )
        except httpx.TransportError as e:
            self.stop_connection()
            raise ApnsCommunicationError(f"APNS request failed: {e}") from e

        if response.status_code == 200:
            notification.apns_id = response.headers.get("apns-id")
            return

        reason = _reason(response)
        if response.status_code == 403 and reason in _CREDENTIAL_REASONS:
            self.stop_connection()
            raise ApnsCredentialsError(f"APNS rejected the certificate: {reason}")

        if response.status_code == 410:
            status = STATUS_INVALID_TOKEN
        else:
            status = _REASON_STATUS.get(reason, STATUS_UNKNOWN)
        notification.response = ResponsePacket(status, reason or f"HTTP {response.status_code}")

    def flush_pending_responses(self) -> int:
        """
        Process the verdicts of every notification sent since the last
        flush: invalid tokens go to the feedback channel, other failures
        are logged.

        Returns:
            Number of notifications processed
        """
        with self._lock:
            pending, self._pending = self._pending, []

        invalid_tokens: List[str] = []
        for notification in pending:
            if notification.successful:
                continue
            response = notification.response
            if response is not None and response.status == STATUS_INVALID_TOKEN:
                invalid_tokens.append(notification.device_token)
            else:
                logger.debug(
                    "APNS notification not accepted",
                    extra={
                        "device_token": notification.device_token,
                        "status": response.status if response else None,
                    }
                )
        if invalid_tokens:
            if self.feedback_store is None:
                logger.warning(
                    "Invalid device tokens not recorded: no feedback store configured",
                    extra={"count": len(invalid_tokens)}
                )
            else:
                self.feedback_store.record(invalid_tokens)
        logger.info("Processed sent notifications", extra={"count": len(pending)})
        return len(pending)

    def feedback(self) -> List[str]:
        """Tokens reported invalid, by any sender, since the previous poll."""
        if self.feedback_store is None:
            return []
        return self.feedback_store.drain()


def _reason(response: httpx.Response) -> str:
    try:
        return str(response.json().get("reason", ""))
    except (ValueError, AttributeError):
        return ""
