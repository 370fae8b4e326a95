"""
Payment Gateway Integration

Creates, checks and refunds PIX payments through Mercado Pago.
The reservation flow only depends on the ``PaymentGateway`` interface,
so tests and other providers can plug in their own implementation.
"""

import asyncio
import logging
import uuid
from abc import ABC, abstractmethod
from decimal import Decimal
from typing import Any, Dict, Optional

import requests
from pydantic import BaseModel

from app.config import settings
from app.models.schemas import PaymentStatus

logger = logging.getLogger(__name__)


class GatewayError(Exception):
    """Custom exception for payment gateway errors."""
    pass


class PaymentIntent(BaseModel):
    """A payment request registered with the provider."""

    intent_id: str
    qr_payload: Optional[str] = None
    qr_code_base64: Optional[str] = None
    status: PaymentStatus = PaymentStatus.PENDING


class PaymentGateway(ABC):
    """Boundary to the payment provider."""

    @abstractmethod
    async def create_intent(
        self,
        amount: Decimal,
        description: str,
        payer: Dict[str, Any],
        external_reference: Optional[str] = None,
    ) -> PaymentIntent:
        """Register a PIX payment and return its id and copy-paste payload."""

    @abstractmethod
    async def get_status(self, intent_id: str) -> PaymentStatus:
        """Current status of a payment."""

    @abstractmethod
    async def refund(self, intent_id: str, reason: str, amount: Decimal) -> None:
        """Return ``amount`` of a payment to the payer."""


# Mercado Pago statuses that mean the money will not arrive
_CLOSED_STATUSES = {"cancelled", "refunded", "charged_back"}


def map_provider_status(raw: Optional[str]) -> PaymentStatus:
    """
    Translate a Mercado Pago payment status.

    Args:
        raw: ``status`` field of a payment resource

    Returns:
        The matching PaymentStatus; unknown values count as in process
    """
    if raw == "approved":
        return PaymentStatus.APPROVED
    if raw == "rejected":
        return PaymentStatus.REJECTED
    if raw in _CLOSED_STATUSES:
        return PaymentStatus.CANCELLED
    if raw == "pending":
        return PaymentStatus.PENDING
    return PaymentStatus.IN_PROCESS


class MercadoPagoGateway(PaymentGateway):
    """
    PIX payments through the Mercado Pago ``/v1/payments`` API.

    Blocking ``requests`` calls run in a worker thread so they never
    stall the event loop.
    """

    def __init__(
        self,
        access_token: Optional[str] = None,
        base_url: Optional[str] = None,
        notification_url: Optional[str] = None,
        timeout: Optional[int] = None,
    ):
        """
        Initialize Mercado Pago gateway.

        Args:
            access_token: Seller access token
            base_url: API base URL
            notification_url: Webhook announced on payment creation
            timeout: Per-request timeout in seconds
        """
        self.access_token = access_token if access_token is not None else settings.mercado_pago_access_token
        self.base_url = (base_url or settings.mercado_pago_api_url).rstrip("/")
        self.notification_url = notification_url or settings.mercado_pago_notification_url
        self.timeout = timeout or settings.mercado_pago_timeout

        logger.info(f"MercadoPagoGateway initialized at {self.base_url}")

    async def create_intent(
        self,
        amount: Decimal,
        description: str,
        payer: Dict[str, Any],
        external_reference: Optional[str] = None,
    ) -> PaymentIntent:
        """
        Create a PIX payment.

        Args:
            amount: Amount to charge
            description: Shown to the payer, truncated to 600 characters
            payer: ``name`` and optional ``email`` of the payer
            external_reference: Our own reference attached to the payment

        Returns:
            PaymentIntent with the provider id and the PIX copy-paste code

        Raises:
            GatewayError: If the provider rejects or cannot be reached
        """
        name_parts = (payer.get("name") or "Cliente").split()
        body: Dict[str, Any] = {
            "transaction_amount": float(amount),
            "description": description[:600],
            "payment_method_id": "pix",
            "payer": {
                "email": payer.get("email") or "customer@example.com",
                "first_name": name_parts[0],
                "last_name": " ".join(name_parts[1:]),
            },
        }
        if external_reference:
            body["external_reference"] = external_reference
        if self.notification_url:
            body["notification_url"] = self.notification_url

        # A retried creation for the same hold must not charge twice
        key = f"pix-{external_reference}" if external_reference else str(uuid.uuid4())
        data = await self._call("POST", "/v1/payments", body=body, idempotency_key=key)

        intent_id = data.get("id")
        if intent_id is None:
            raise GatewayError("Mercado Pago response has no payment id")

        transaction = (data.get("point_of_interaction") or {}).get("transaction_data") or {}
        intent = PaymentIntent(
            intent_id=str(intent_id),
            qr_payload=transaction.get("qr_code"),
            qr_code_base64=transaction.get("qr_code_base64"),
            status=map_provider_status(data.get("status")),
        )
        logger.info(f"Created PIX payment {intent.intent_id} for {amount}")
        return intent

    async def get_status(self, intent_id: str) -> PaymentStatus:
        data = await self._call("GET", f"/v1/payments/{intent_id}")
        status = map_provider_status(data.get("status"))
        logger.debug(f"Payment {intent_id} status: {data.get('status')} -> {status.value}")
        return status

    async def refund(self, intent_id: str, reason: str, amount: Decimal) -> None:
        """
        Refund a payment, fully or partially.

        The refunds endpoint takes no description; ``reason`` is logged here
        and stored on the appointment by the caller. Repeating the same
        refund reuses its idempotency key, so the provider returns it once.

        Raises:
            GatewayError: If the provider does not accept the refund
        """
        await self._call(
            "POST",
            f"/v1/payments/{intent_id}/refunds",
            body={"amount": float(amount)},
            idempotency_key=f"refund-{intent_id}-{Decimal(amount):.2f}",
        )
        logger.info(f"Refunded {amount} of payment {intent_id} ({reason})")

    async def _call(
        self,
        method: str,
        path: str,
        body: Optional[Dict[str, Any]] = None,
        idempotency_key: Optional[str] = None,
    ) -> Dict[str, Any]:
        if not self.access_token:
            raise GatewayError("Mercado Pago access token is not configured")

        headers = {
            "Authorization": f"Bearer {self.access_token}",
            "Content-Type": "application/json",
        }
        if idempotency_key:
            headers["X-Idempotency-Key"] = idempotency_key

        return await asyncio.to_thread(self._send, method, path, headers, body)

    def _send(
        self,
        method: str,
        path: str,
        headers: Dict[str, str],
        body: Optional[Dict[str, Any]],
    ) -> Dict[str, Any]:
        url = f"{self.base_url}{path}"
        try:
            response = requests.request(
                method,
                url,
                headers=headers,
                json=body,
                timeout=self.timeout,
            )
        except requests.exceptions.ConnectionError as e:
            logger.error(f"Failed to connect to Mercado Pago at {self.base_url}: {e}")
            raise GatewayError(f"Cannot connect to Mercado Pago: {str(e)}") from e
        except requests.exceptions.Timeout as e:
            logger.error(f"Request to Mercado Pago timed out: {e}")
            raise GatewayError("Request to Mercado Pago timed out") from e
        except requests.exceptions.RequestException as e:
            logger.error(f"Error communicating with Mercado Pago: {e}")
            raise GatewayError(f"Failed to communicate with Mercado Pago: {str(e)}") from e

        if response.status_code not in (200, 201):
            logger.error(
                f"Mercado Pago {method} {path} returned {response.status_code}: {response.text}"
            )
            raise GatewayError(
                f"Mercado Pago API error: {response.status_code}: {response.text}"
            )

        try:
            return response.json()
        except ValueError as e:
            raise GatewayError("Mercado Pago returned a non-JSON response") from e
