from __future__ import annotations

import logging
from dataclasses import dataclass

import httpx

from booking_crm.infra.email import EmailAdapter, NoopEmailAdapter
from booking_crm.infra.metrics import metrics
from booking_crm.settings import settings
from booking_crm.shared.circuit_breaker import CircuitBreaker, CircuitBreakerOpenError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CommunicationResult:
    status: str
    provider_msg_id: str | None = None
    error_code: str | None = None

    @property
    def delivered(self) -> bool:
        return self.status == "sent"


class NoopWhatsAppAdapter:
    async def send_whatsapp(self, *, to_number: str, body: str) -> CommunicationResult:  # noqa: D401
        del to_number, body
        logger.info("whatsapp_send_skipped", extra={"extra": {"mode": "noop"}})
        return CommunicationResult(status="failed", error_code="whatsapp_disabled")


class TwilioWhatsAppAdapter:
    def __init__(self, http_client: httpx.AsyncClient | None = None) -> None:
        self.http_client = http_client
        self._breaker = CircuitBreaker(
            name="whatsapp",
            failure_threshold=settings.whatsapp_circuit_failure_threshold,
            recovery_time=settings.whatsapp_circuit_recovery_seconds,
            timeout_seconds=settings.twilio_timeout_seconds,
        )

    async def send_whatsapp(self, *, to_number: str, body: str) -> CommunicationResult:
        if settings.whatsapp_mode != "twilio":
            logger.info("whatsapp_send_skipped", extra={"extra": {"mode": settings.whatsapp_mode}})
            return CommunicationResult(status="failed", error_code="whatsapp_disabled")
        if not _twilio_whatsapp_configured():
            logger.warning("whatsapp_send_not_configured")
            return CommunicationResult(status="failed", error_code="twilio_not_configured")
        payload = {
            "To": _whatsapp_address(to_number),
            "From": _whatsapp_address(settings.twilio_whatsapp_from or ""),
            "Body": body,
        }
        try:
            return await self._breaker.call(self._post_twilio, _twilio_messages_url(), payload)
        except CircuitBreakerOpenError:
            logger.warning("whatsapp_circuit_open")
            return CommunicationResult(status="failed", error_code="circuit_open")
        except (httpx.HTTPError, TimeoutError) as exc:
            logger.warning("twilio_request_failed", extra={"extra": {"reason": type(exc).__name__}})
            return CommunicationResult(status="failed", error_code="twilio_request_failed")

    async def _post_twilio(self, url: str, payload: dict[str, str]) -> CommunicationResult:
        client = self.http_client or httpx.AsyncClient()
        close_client = self.http_client is None
        try:
            response = await client.post(
                url,
                data=payload,
                auth=(settings.twilio_account_sid or "", settings.twilio_auth_token or ""),
                timeout=settings.twilio_timeout_seconds,
            )
        finally:
            if close_client:
                await client.aclose()

        if response.status_code >= 500:
            # Counted by the breaker; client errors are not provider outages.
            response.raise_for_status()
        if response.status_code >= 400:
            logger.warning(
                "twilio_request_error",
                extra={"extra": {"status_code": response.status_code}},
            )
            return CommunicationResult(status="failed", error_code=f"twilio_status_{response.status_code}")

        provider_msg_id = None
        try:
            provider_msg_id = response.json().get("sid")
        except ValueError:
            logger.warning("twilio_response_parse_failed")
        return CommunicationResult(status="sent", provider_msg_id=provider_msg_id)


class MessagingNotificationSink:
    """WhatsApp text plus e-mail delivery behind one injected interface."""

    def __init__(
        self,
        *,
        whatsapp: TwilioWhatsAppAdapter | NoopWhatsAppAdapter,
        email: EmailAdapter | NoopEmailAdapter,
    ) -> None:
        self.whatsapp = whatsapp
        self.email = email

    async def send_whatsapp(self, *, to_number: str, body: str) -> CommunicationResult:
        result = await self.whatsapp.send_whatsapp(to_number=to_number, body=body)
        metrics.record_notification("whatsapp", result.status)
        return result

    async def send_email(self, *, recipient: str, subject: str, body: str) -> bool:
        try:
            delivered = await self.email.send_email(recipient, subject, body)
        except Exception:
            metrics.record_notification("email", "failed")
            raise
        metrics.record_notification("email", "sent" if delivered else "skipped")
        return delivered


def resolve_whatsapp_adapter(app_settings) -> TwilioWhatsAppAdapter | NoopWhatsAppAdapter:
    if app_settings.whatsapp_mode != "twilio" or getattr(app_settings, "testing", False):
        return NoopWhatsAppAdapter()
    return TwilioWhatsAppAdapter()


def _twilio_whatsapp_configured() -> bool:
    return bool(settings.twilio_account_sid and settings.twilio_auth_token and settings.twilio_whatsapp_from)


def _whatsapp_address(number: str) -> str:
    # Baileys-style JIDs ("4179...@s.whatsapp.net") arrive from the chat layer.
    number = number.split("@", 1)[0]
    if number.startswith("whatsapp:"):
        return number
    if not number.startswith("+"):
        number = f"+{number}"
    return f"whatsapp:{number}"


def _twilio_messages_url() -> str:
    return f"https://api.twilio.com/2010-04-01/Accounts/{settings.twilio_account_sid}/Messages.json"
