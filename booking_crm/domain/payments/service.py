import logging
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from booking_crm.domain.bookings.db_models import Booking
from booking_crm.domain.bookings.ports import NotificationSink, PaymentGateway
from booking_crm.domain.catalog.db_models import Service
from booking_crm.domain.contacts.db_models import Contact
from booking_crm.domain.errors import OutstandingBalance
from booking_crm.domain.payments.db_models import PaymentTransaction
from booking_crm.settings import settings

logger = logging.getLogger(__name__)

PENALTY_TYPE_FIXED = "fixed"
PENALTY_TYPE_PERCENTAGE = "percentage"
CENT = Decimal("0.01")


def ensure_payment_allowed(contact: Contact) -> None:
    balance = Decimal(contact.outstanding_balance_chf or 0)
    if balance > 0 and not contact.payment_allowance_granted:
        raise OutstandingBalance(
            detail=(
                f"An outstanding balance of {settings.default_currency} {balance:.2f} must be settled "
                "before a new appointment can be booked. Please pay the open amount or contact us."
            ),
            balance=balance,
        )


def compute_penalty_fee(penalty_type: str, amount: Decimal, service_price: Decimal | None) -> Decimal:
    if penalty_type == PENALTY_TYPE_PERCENTAGE:
        if service_price is None:
            return Decimal("0.00")
        return (Decimal(service_price) * amount / 100).quantize(CENT, rounding=ROUND_HALF_UP)
    return Decimal(amount).quantize(CENT, rounding=ROUND_HALF_UP)


async def get_service_price(session: AsyncSession, service_id: str | None) -> Decimal | None:
    if not service_id:
        return None
    return await session.scalar(select(Service.price_chf).where(Service.service_id == service_id))


async def create_penalty_transaction(
    session: AsyncSession, booking: Booking, amount: Decimal
) -> PaymentTransaction:
    transaction = PaymentTransaction(
        booking_id=booking.booking_id,
        contact_id=booking.contact_id,
        amount=amount,
        currency=settings.default_currency,
        status="pending",
        payment_type="penalty",
        description=f"Late cancellation fee: {booking.title}",
    )
    session.add(transaction)
    await session.flush()
    logger.info(
        "penalty_transaction_created",
        extra={"extra": {"booking_id": booking.booking_id, "transaction_id": transaction.transaction_id}},
    )
    return transaction


@dataclass(frozen=True)
class PenaltyLinkRequest:
    booking_id: str
    booking_title: str
    contact_name: str | None
    contact_email: str | None
    phone_number: str
    amount: Decimal

    @classmethod
    def from_models(cls, contact: Contact, booking: Booking, amount: Decimal) -> "PenaltyLinkRequest":
        return cls(
            booking_id=booking.booking_id,
            booking_title=booking.title,
            contact_name=contact.name,
            contact_email=contact.email,
            phone_number=contact.phone_number,
            amount=amount,
        )


async def send_penalty_payment_link(
    gateway: PaymentGateway, sink: NotificationSink, request: PenaltyLinkRequest
) -> bool:
    """Create a payment link for a late-cancellation fee and send it over WhatsApp.

    Failures are logged only; the cancellation that triggered the fee never depends on this.
    """
    try:
        url = await gateway.create_payment_link(
            amount=request.amount,
            currency=settings.default_currency,
            description=f"Late cancellation fee - {request.booking_title}",
            metadata={"booking_id": request.booking_id, "payment_type": "penalty"},
            customer_email=request.contact_email,
            idempotency_key=f"penalty-link-{request.booking_id}",
        )
        body = (
            f"Hi {request.contact_name or 'there'}! A late cancellation fee of {settings.default_currency} "
            f"{request.amount:.2f} applies to your cancelled appointment \"{request.booking_title}\". "
            f"You can pay securely here: {url}"
        )
        result = await sink.send_whatsapp(to_number=request.phone_number, body=body)
    except Exception as exc:  # noqa: BLE001
        logger.warning(
            "penalty_payment_link_failed",
            extra={"extra": {"booking_id": request.booking_id, "error": type(exc).__name__}},
        )
        return False
    if not result.delivered:
        logger.warning(
            "penalty_payment_link_not_delivered",
            extra={"extra": {"booking_id": request.booking_id, "error_code": result.error_code}},
        )
    return result.delivered


async def handle_cancellation_refund(
    session: AsyncSession, gateway: PaymentGateway, booking_id: str
) -> bool:
    """Refund the latest succeeded payment of a booking; ``False`` when there is nothing to refund."""
    transaction = await session.scalar(
        select(PaymentTransaction)
        .where(
            PaymentTransaction.booking_id == booking_id,
            PaymentTransaction.status == "succeeded",
            PaymentTransaction.payment_type != "penalty",
        )
        .order_by(PaymentTransaction.created_at.desc())
        .limit(1)
    )
    if transaction is None or not transaction.stripe_payment_intent_id:
        logger.info("refund_skipped_no_payment", extra={"extra": {"booking_id": booking_id}})
        return False

    refund_id = await gateway.refund_payment(
        transaction.stripe_payment_intent_id,
        amount=transaction.amount,
        idempotency_key=f"refund-{transaction.transaction_id}",
    )
    transaction.status = "refunded"
    transaction.refund_amount = transaction.amount
    transaction.stripe_refund_id = refund_id
    booking = await session.get(Booking, booking_id)
    if booking is not None:
        booking.payment_status = "refunded"
    await session.flush()
    logger.info(
        "booking_payment_refunded",
        extra={"extra": {"booking_id": booking_id, "transaction_id": transaction.transaction_id}},
    )
    return True
