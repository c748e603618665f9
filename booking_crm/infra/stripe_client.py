from __future__ import annotations

import inspect
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Callable

import anyio

from booking_crm.settings import settings
from booking_crm.shared.circuit_breaker import CircuitBreaker

stripe_circuit = CircuitBreaker(
    name="stripe",
    failure_threshold=settings.stripe_circuit_failure_threshold,
    recovery_time=settings.stripe_circuit_recovery_seconds,
    window_seconds=settings.stripe_circuit_window_seconds,
    half_open_max_calls=settings.stripe_circuit_half_open_max_calls,
    timeout_seconds=settings.stripe_timeout_seconds,
)


def to_minor_units(amount: Decimal) -> int:
    return int((amount * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


class StripePaymentGateway:
    def __init__(self, *, secret_key: str | None, stripe_sdk: Any | None = None) -> None:
        """Stripe-backed payment gateway.

        Passing ``None`` for ``secret_key`` falls back to global settings; calls
        fail fast with ``ValueError`` when no key is configured.
        """
        if stripe_sdk is None:
            import stripe as stripe_sdk  # type: ignore

        self.stripe = stripe_sdk
        self.secret_key = secret_key or settings.stripe_secret_key

    def _stripe_request_timeout(self) -> float:
        timeout = stripe_circuit.timeout_seconds
        if timeout is None:
            return 10.0
        return max(0.01, timeout)

    def _require_key(self) -> None:
        if not self.secret_key:
            raise ValueError("Stripe secret key not configured")
        self.stripe.api_key = self.secret_key

    async def _call(self, fn: Callable[..., Any], /, *args, **kwargs) -> Any:
        request_kwargs = dict(kwargs)
        try:
            signature = inspect.signature(fn)
            supports_timeout = any(
                parameter.kind == inspect.Parameter.VAR_KEYWORD or name == "timeout"
                for name, parameter in signature.parameters.items()
            )
        except (TypeError, ValueError):
            supports_timeout = True
        if supports_timeout:
            request_kwargs.setdefault("timeout", self._stripe_request_timeout())

        def _sync_call() -> Any:
            return fn(*args, **request_kwargs)

        return await stripe_circuit.call(lambda: anyio.to_thread.run_sync(_sync_call))

    async def refund_payment(
        self,
        payment_intent_id: str,
        *,
        amount: Decimal | None = None,
        idempotency_key: str | None = None,
    ) -> str:
        self._require_key()
        payload: dict[str, Any] = {"payment_intent": payment_intent_id}
        if amount is not None:
            payload["amount"] = to_minor_units(amount)
        if idempotency_key:
            payload["idempotency_key"] = idempotency_key
        refund = await self._call(self.stripe.Refund.create, **payload)
        return refund["id"]

    async def create_payment_intent(
        self,
        *,
        amount: Decimal,
        currency: str,
        metadata: dict[str, str] | None = None,
        idempotency_key: str | None = None,
    ) -> str:
        self._require_key()
        payload: dict[str, Any] = {
            "amount": to_minor_units(amount),
            "currency": currency.lower(),
            "metadata": metadata or {},
            "automatic_payment_methods": {"enabled": True},
        }
        if idempotency_key:
            payload["idempotency_key"] = idempotency_key
        intent = await self._call(self.stripe.PaymentIntent.create, **payload)
        return intent["id"]

    async def create_payment_link(
        self,
        *,
        amount: Decimal,
        currency: str,
        description: str,
        metadata: dict[str, str] | None = None,
        customer_email: str | None = None,
        idempotency_key: str | None = None,
    ) -> str:
        self._require_key()
        payload: dict[str, Any] = {
            "mode": "payment",
            "payment_method_types": ["card"],
            "success_url": settings.payment_link_success_url,
            "cancel_url": settings.payment_link_cancel_url,
            "line_items": [
                {
                    "price_data": {
                        "currency": currency.lower(),
                        "product_data": {"name": description},
                        "unit_amount": to_minor_units(amount),
                    },
                    "quantity": 1,
                }
            ],
            "metadata": metadata or {},
        }
        if metadata:
            payload["payment_intent_data"] = {"metadata": metadata}
        if customer_email:
            payload["customer_email"] = customer_email
        if idempotency_key:
            payload["idempotency_key"] = idempotency_key
        session = await self._call(self.stripe.checkout.Session.create, **payload)
        return session["url"]


def resolve_payment_gateway(app_settings) -> StripePaymentGateway:
    return StripePaymentGateway(secret_key=getattr(app_settings, "stripe_secret_key", None))
