"""
Message delivery clients.

The orchestrator only depends on ``MessageDeliveryClient.send``. The
simulated client stands in for a vendor in development and tests; the HTTP
client posts to a vendor endpoint configured in settings.
"""

import logging
import random
import uuid
from dataclasses import dataclass
from typing import Optional, Protocol

import httpx

from app.config import settings
from app.models.communication_log import DeliveryStatus

logger = logging.getLogger(__name__)


@dataclass
class DeliveryResult:
    """Outcome of handing one message to the vendor."""

    success: bool
    status: DeliveryStatus
    message_id: Optional[str] = None
    error: Optional[str] = None


class MessageDeliveryClient(Protocol):
    async def send(self, to: str, subject: str, body: str) -> DeliveryResult: ...


class SimulatedDeliveryClient:
    """Accepts each message with probability ``success_rate``."""

    def __init__(self, success_rate: Optional[float] = None, rng: Optional[random.Random] = None):
        self.success_rate = settings.DELIVERY_SUCCESS_RATE if success_rate is None else success_rate
        self.rng = rng or random.Random()

    async def send(self, to: str, subject: str, body: str) -> DeliveryResult:
        message_id = f"sim_{uuid.uuid4().hex[:16]}"
        if self.rng.random() < self.success_rate:
            return DeliveryResult(success=True, status=DeliveryStatus.sent, message_id=message_id)
        return DeliveryResult(
            success=False,
            status=DeliveryStatus.failed,
            message_id=message_id,
            error="Simulated vendor rejection",
        )


class HttpDeliveryClient:
    """Delivers messages through a vendor's JSON API."""

    def __init__(
        self,
        endpoint: Optional[str] = None,
        api_key: Optional[str] = None,
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = 30.0,
    ):
        self.endpoint = endpoint or settings.DELIVERY_VENDOR_URL
        self.api_key = api_key or settings.DELIVERY_VENDOR_API_KEY
        self.client = client
        self.timeout = timeout

    @property
    def is_configured(self) -> bool:
        return bool(self.endpoint)

    async def _post(self, payload: dict, headers: dict) -> httpx.Response:
        if self.client is not None:
            return await self.client.post(self.endpoint, json=payload, headers=headers, timeout=self.timeout)
        async with httpx.AsyncClient() as client:
            return await client.post(self.endpoint, json=payload, headers=headers, timeout=self.timeout)

    async def send(self, to: str, subject: str, body: str) -> DeliveryResult:
        """
        Send one message.

        Args:
            to: Recipient address
            subject: Message subject line
            body: Personalized message body

        Returns:
            DeliveryResult; transport errors are reported as failures, never raised
        """
        if not self.is_configured:
            logger.error("Delivery vendor endpoint not configured")
            return DeliveryResult(False, DeliveryStatus.failed, error="Delivery vendor not configured")

        headers = {"accept": "application/json", "content-type": "application/json"}
        if self.api_key:
            headers["api-key"] = self.api_key

        try:
            response = await self._post({"to": to, "subject": subject, "body": body}, headers)
        except httpx.TimeoutException:
            logger.error("Delivery vendor request timed out")
            return DeliveryResult(False, DeliveryStatus.failed, error="Delivery vendor request timed out")
        except httpx.HTTPError as e:
            logger.error("Delivery vendor request failed: %s", e.__class__.__name__)
            return DeliveryResult(False, DeliveryStatus.failed, error=str(e))

        if response.status_code in (200, 201, 202):
            data = response.json() if response.content else {}
            status = DeliveryStatus.pending if response.status_code == 202 else DeliveryStatus.sent
            return DeliveryResult(True, status, message_id=data.get("messageId"))

        logger.error("Delivery vendor error", extra={"status_code": response.status_code})
        return DeliveryResult(
            False, DeliveryStatus.failed, error=f"Vendor API error {response.status_code}: {response.text[:200]}"
        )
