"""
HTTP client for the WhatsApp messaging gateway.

The gateway exposes two endpoints relative to its base URL:

* ``GET /status`` returns ``{"connected": bool, "phoneNumber": ..., "timestamp": ...}``
* ``POST /send-message`` takes ``{"phoneNumber", "message"}`` and returns
  ``{"success": bool, "messageId": ..., "message": ...}``
"""

import logging
import time
from typing import Any, Dict, Optional

import requests

from whatsapp_worker.notifications.exceptions import GatewayError
from whatsapp_worker.notifications.models import GatewayStatus, SendResult
from whatsapp_worker.notifications.phone import mask_phone
from whatsapp_worker.utils.error_handler import GATEWAY_COMPONENT
from whatsapp_worker.utils.logger import get_structured_logger


logger = logging.getLogger(__name__)


class WhatsAppGatewayClient:
    """
    WhatsApp gateway client over plain HTTP.

    Status checks fail closed: any problem reaching or parsing the status
    endpoint is reported as disconnected. Send failures the gateway reports
    itself come back as an unsuccessful :class:`SendResult`; transport or
    decoding failures raise :class:`GatewayError`.

    Every call is timed. With an ``error_handler`` the timings are recorded
    under the ``gateway`` component, which feeds the API response time of
    the health snapshot.
    """

    def __init__(self,
                 base_url: str = "https://api.proconnection.me/api",
                 timeout: int = 30,
                 status_path: str = "/status",
                 send_path: str = "/send-message",
                 error_handler=None):
        """
        Initialize gateway client.

        Args:
            base_url: Gateway API base URL
            timeout: Request timeout in seconds
            status_path: Path of the connectivity endpoint
            send_path: Path of the send endpoint
            error_handler: Optional GlobalErrorHandler receiving call timings
        """
        self.base_url = base_url.rstrip('/')
        self.timeout = timeout
        self.status_url = f"{self.base_url}{status_path}"
        self.send_url = f"{self.base_url}{send_path}"
        self.error_handler = error_handler
        self.call_log = get_structured_logger(GATEWAY_COMPONENT)

        logger.info(f"WhatsApp gateway client initialized for {self.base_url}")

    @classmethod
    def from_config(cls, config, error_handler=None) -> 'WhatsAppGatewayClient':
        """Build a client from a ``GatewayConfig``."""
        return cls(
            base_url=config.base_url,
            timeout=config.timeout_seconds,
            status_path=config.status_path,
            send_path=config.send_path,
            error_handler=error_handler,
        )

    def check_connected(self) -> bool:
        """
        Ask the gateway whether its WhatsApp session is live.

        Returns:
            True only for a 2xx answer whose body has a truthy ``connected``
        """
        return self.get_status().connected

    def get_status(self) -> GatewayStatus:
        """
        Fetch the gateway status snapshot.

        Never raises; errors are captured in ``GatewayStatus.error``.
        """
        start_time = time.perf_counter()
        status = self._fetch_status()
        self._record_call("get_status", start_time, status.error is None, status.error)
        return status

    def send_message(self, phone_number: str, message: str) -> SendResult:
        """
        Send one WhatsApp message.

        Args:
            phone_number: Recipient in canonical ``+549...`` form
            message: Text to send

        Returns:
            SendResult mirroring the gateway answer

        Raises:
            GatewayError: If the gateway is unreachable or the body is not JSON
        """
        start_time = time.perf_counter()
        try:
            result = self._post_message(phone_number, message)
        except GatewayError as e:
            self._record_call("send_message", start_time, False, str(e), status_code=e.status_code)
            raise

        self._record_call("send_message", start_time, result.success, result.error_message)
        return result

    def _fetch_status(self) -> GatewayStatus:
        try:
            response = requests.get(self.status_url, timeout=self.timeout)
        except requests.exceptions.RequestException as e:
            logger.error(f"Error checking WhatsApp gateway status: {e}")
            return GatewayStatus(connected=False, error=str(e))

        if not response.ok:
            logger.warning(f"Could not check WhatsApp gateway status: HTTP {response.status_code}")
            return GatewayStatus(connected=False, error=f"HTTP {response.status_code}")

        try:
            data = response.json()
        except ValueError as e:
            logger.warning(f"WhatsApp gateway status response is not JSON: {e}")
            return GatewayStatus(connected=False, error="Invalid status response")

        if not isinstance(data, dict):
            logger.warning("WhatsApp gateway status response is not an object")
            return GatewayStatus(connected=False, error="Invalid status response")

        connected = bool(data.get('connected'))
        logger.info(f"WhatsApp gateway status: {'connected' if connected else 'disconnected'}")

        return GatewayStatus(
            connected=connected,
            phone_number=data.get('phoneNumber'),
            timestamp=data.get('timestamp'),
        )

    def _post_message(self, phone_number: str, message: str) -> SendResult:
        payload = {'phoneNumber': phone_number, 'message': message}

        try:
            response = requests.post(
                self.send_url,
                json=payload,
                headers={'Content-Type': 'application/json'},
                timeout=self.timeout
            )
        except requests.exceptions.Timeout as e:
            raise GatewayError(f"WhatsApp gateway timed out: {e}", retryable=True)
        except requests.exceptions.RequestException as e:
            raise GatewayError(f"WhatsApp gateway request failed: {e}", retryable=True)

        data = self._parse_body(response)

        if data.get('success'):
            logger.debug(f"Gateway accepted message for {mask_phone(phone_number)}")
            return SendResult(success=True, message_id=data.get('messageId'), raw=data)

        error_message = data.get('message') or data.get('error') or f"HTTP {response.status_code}"
        logger.warning(f"Gateway rejected message for {mask_phone(phone_number)}: {error_message}")
        return SendResult(success=False, error_message=str(error_message), raw=data)

    def _record_call(self, operation: str, start_time: float, success: bool,
                     error_message: Optional[str] = None, **fields):
        duration = time.perf_counter() - start_time

        self.call_log.debug(
            "gateway_call",
            operation=operation,
            duration_seconds=round(duration, 4),
            success=success,
            **fields
        )

        if self.error_handler is not None:
            self.error_handler.record_performance(
                GATEWAY_COMPONENT, operation, duration,
                success=success, error_message=error_message
            )

    def _parse_body(self, response: requests.Response) -> Dict[str, Any]:
        try:
            data = response.json()
        except ValueError:
            raise GatewayError(
                f"WhatsApp gateway returned a non-JSON response (HTTP {response.status_code})",
                status_code=response.status_code,
                retryable=response.status_code >= 500
            )

        if not isinstance(data, dict):
            raise GatewayError(
                "WhatsApp gateway returned an unexpected response body",
                status_code=response.status_code
            )

        return data

