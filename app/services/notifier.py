"""
WhatsApp Notification Service

Sends customer and staff messages through a WUZAPI instance and builds
the message texts. Message delivery is best effort: a failed message is
logged and never changes the outcome of a booking operation.
"""

import asyncio
import logging
import re
from abc import ABC, abstractmethod
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Optional

import requests

from app.config import settings

logger = logging.getLogger(__name__)


class NotificationError(Exception):
    """Custom exception for message delivery errors."""
    pass


def normalize_phone(phone: str) -> str:
    """
    Normalize a Brazilian phone number to the digits WhatsApp expects.

    Non-digits are stripped. An 11-digit number (area code + mobile) gets
    the 55 country code; a 10-digit number gets 55 plus the 11 area code.

    Example:
        >>> normalize_phone("(11) 98765-4321")
        '5511987654321'
    """
    digits = re.sub(r"\D", "", phone or "")
    if digits.startswith("55"):
        return digits
    if len(digits) == 11:
        return "55" + digits
    if len(digits) == 10:
        return "5511" + digits
    return digits


class Notifier(ABC):
    """Boundary to the messaging provider."""

    @abstractmethod
    async def user_reachable(self, phone: str) -> bool:
        """Whether ``phone`` can receive messages."""

    @abstractmethod
    async def send(self, phone: str, message: str) -> None:
        """Deliver ``message``; raise NotificationError on failure."""


class WhatsAppNotifier(Notifier):
    """Notifier backed by the WUZAPI ``/user/check`` and ``/chat/send/text`` endpoints."""

    def __init__(
        self,
        api_token: Optional[str] = None,
        base_url: Optional[str] = None,
        timeout: Optional[int] = None,
    ):
        self.api_token = api_token if api_token is not None else settings.whatsapp_api_token
        self.base_url = (base_url or settings.whatsapp_api_url).rstrip("/")
        self.timeout = timeout or settings.whatsapp_timeout

        logger.info(f"WhatsAppNotifier initialized at {self.base_url}")

    async def user_reachable(self, phone: str) -> bool:
        """
        Check whether a number has WhatsApp.

        A failed lookup does not prove the number unreachable, so it is
        logged and reported as reachable; only an explicit "not on
        WhatsApp" answer returns False.

        Args:
            phone: Customer phone in any format

        Returns:
            False only if the provider says the number has no WhatsApp
        """
        number = normalize_phone(phone)
        try:
            data = await self._post("/user/check", {"Phone": [number]})
        except NotificationError as e:
            logger.warning(f"Could not verify {number}, sending anyway: {e}")
            return True

        payload = data.get("data")
        users = payload.get("Users") if isinstance(payload, dict) else None
        if not isinstance(users, list):
            logger.warning(f"Unexpected lookup answer for {number}, sending anyway: {data}")
            return True
        if users and isinstance(users[0], dict) and users[0].get("IsInWhatsapp"):
            return True

        logger.info(f"Number {number} is not on WhatsApp")
        return False

    async def send(self, phone: str, message: str) -> None:
        """
        Send a text message.

        Args:
            phone: Recipient phone in any format
            message: Message body (WhatsApp markdown allowed)

        Raises:
            NotificationError: If the provider does not accept the message
        """
        number = normalize_phone(phone)
        data = await self._post("/chat/send/text", {"Phone": number, "Body": message})
        if data.get("success") is False:
            raise NotificationError(f"WhatsApp API refused message to {number}: {data}")
        logger.info(f"Message sent to {number}")

    async def _post(self, path: str, body: Dict[str, Any]) -> Dict[str, Any]:
        if not self.api_token:
            raise NotificationError("WhatsApp instance token is not configured")
        return await asyncio.to_thread(self._send_request, path, body)

    def _send_request(self, path: str, body: Dict[str, Any]) -> Dict[str, Any]:
        try:
            response = requests.post(
                f"{self.base_url}{path}",
                headers={"Token": self.api_token, "Content-Type": "application/json"},
                json=body,
                timeout=self.timeout,
            )
        except requests.exceptions.Timeout as e:
            raise NotificationError(f"WhatsApp API timed out on {path}") from e
        except requests.exceptions.RequestException as e:
            raise NotificationError(f"WhatsApp API request failed on {path}: {str(e)}") from e

        if not response.ok:
            raise NotificationError(
                f"WhatsApp API returned status {response.status_code}: {response.text}"
            )

        try:
            data = response.json()
        except ValueError:
            # Some instances answer plain text on success
            return {}

        if not isinstance(data, dict):
            raise NotificationError(f"WhatsApp API returned an unexpected body on {path}: {data!r}")
        return data


class NotificationDispatcher:
    """
    Best-effort delivery on top of a Notifier.

    Checks reachability first and swallows delivery errors after logging
    them, so callers can notify without guarding every call.
    """

    def __init__(self, notifier: Notifier):
        self.notifier = notifier

    async def notify(self, phone: Optional[str], message: str) -> bool:
        """
        Try to deliver one message.

        Args:
            phone: Recipient phone; missing numbers are skipped
            message: Message body

        Returns:
            True if the provider accepted the message
        """
        if not phone:
            logger.info("No phone number, message skipped")
            return False

        try:
            if not await self.notifier.user_reachable(phone):
                logger.info(f"Recipient {phone} unreachable, message skipped")
                return False
            await self.notifier.send(phone, message)
            return True
        except NotificationError as e:
            logger.error(f"Failed to notify {phone}: {e}")
            return False
        except Exception as e:
            logger.error(f"Unexpected error notifying {phone}: {e}", exc_info=True)
            return False


# ---------------------------------------------------------------------------
# Message templates
# ---------------------------------------------------------------------------


def _when(moment: datetime) -> str:
    return moment.strftime("%d/%m/%Y às %H:%M")


def _money(amount: Decimal) -> str:
    return f"R$ {Decimal(amount):.2f}".replace(".", ",")


def pending_payment_message(
    shop_name: str,
    customer_name: str,
    appointment_datetime: datetime,
    amount: Decimal,
    qr_payload: Optional[str],
    hold_minutes: int,
) -> str:
    message = (
        f"*{shop_name}*\n\n"
        f"Olá {customer_name}! 👋\n\n"
        f"Seu horário de {_when(appointment_datetime)} está reservado.\n"
        f"Pague {_money(amount)} via PIX em até {hold_minutes} minutos para confirmar."
    )
    if qr_payload:
        message += f"\n\nPIX copia e cola:\n{qr_payload}"
    return message


def confirmed_customer_message(
    shop_name: str,
    customer_name: str,
    professional_name: str,
    service_name: str,
    appointment_datetime: datetime,
) -> str:
    return (
        f"*{shop_name}*\n\n"
        f"Olá {customer_name}! ✅\n\n"
        f"Pagamento recebido, seu agendamento está confirmado.\n\n"
        f"📅 {_when(appointment_datetime)}\n"
        f"💈 {service_name} com {professional_name}\n\n"
        f"Até breve! 🙏"
    )


def confirmed_professional_message(
    customer_name: str,
    customer_phone: str,
    service_name: str,
    appointment_datetime: datetime,
) -> str:
    return (
        f"📅 Novo agendamento confirmado\n\n"
        f"Cliente: {customer_name} ({customer_phone})\n"
        f"Serviço: {service_name}\n"
        f"Horário: {_when(appointment_datetime)}"
    )


def expired_hold_message(shop_name: str, customer_name: str, hold_minutes: int) -> str:
    return (
        f"*{shop_name}*\n\n"
        f"Olá {customer_name}! 👋\n\n"
        f"O tempo para realizar o pagamento PIX do seu agendamento *expirou* "
        f"({hold_minutes} minutos).\n\n"
        f"O horário foi liberado e você pode criar um novo agendamento quando quiser.\n\n"
        f"Obrigado pela preferência! 🙏"
    )


def refund_message(
    shop_name: str,
    customer_name: str,
    appointment_datetime: datetime,
    amount: Decimal,
) -> str:
    return (
        f"*{shop_name}*\n\n"
        f"Olá {customer_name}!\n\n"
        f"Seu agendamento de {_when(appointment_datetime)} foi cancelado e o valor de "
        f"{_money(amount)} pago via PIX foi estornado."
    )
