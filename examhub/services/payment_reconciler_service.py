"""
examhub/services/payment_reconciler_service.py
Purchase/Payment Reconciler

Turns payment-provider confirmation events into ledger credits.

DELIVERY ASSUMPTIONS:
- At-least-once: the same confirmation may arrive many times
- Possibly out of order, possibly concurrently
- Correctness rests on payment_reference uniqueness in the ledger, never on
  caller-side deduplication

VALIDATION:
- quantity must be positive
- amount must equal exam.price x quantity, to the cent
- a failed validation (including an unknown exam) is stored once per
  (payment_reference, reason) as a PaymentRejection for manual review
"""
import hashlib
import hmac
import logging
from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP, InvalidOperation
from typing import Optional, Union

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from examhub.orm.exam import Exam
from examhub.orm.payment_rejection import PaymentRejection
from examhub.services import entitlement_ledger_service as ledger
from examhub.services.outcomes import Outcome, OperationResult

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")


@dataclass(frozen=True)
class PaymentConfirmedEvent:
    academy_id: int
    exam_id: int
    quantity: int
    payment_reference: str
    amount: Union[Decimal, float, str]


def to_money(value: Union[Decimal, float, str, int, None]) -> Optional[Decimal]:
    """Quantize to cents; None when the value is not a number."""
    if value is None:
        return None
    try:
        return Decimal(str(value)).quantize(CENT, rounding=ROUND_HALF_UP)
    except (InvalidOperation, ValueError):
        return None


def expected_amount(exam: Exam, quantity: int) -> Decimal:
    return (to_money(exam.price) * quantity).quantize(CENT, rounding=ROUND_HALF_UP)


def verify_signature(payload: bytes, signature: Optional[str], secret: str) -> bool:
    """
    Check an HMAC-SHA256 hex signature of the raw webhook body.

    An empty secret disables verification.
    """
    if not secret:
        return True
    if not signature:
        return False
    expected = hmac.new(secret.encode(), payload, hashlib.sha256).hexdigest()
    if signature.startswith("sha256="):
        signature = signature[len("sha256="):]
    return hmac.compare_digest(expected, signature)


async def _record_rejection(
    event: PaymentConfirmedEvent,
    reason: str,
    db: AsyncSession,
    expected: Optional[Decimal] = None,
) -> PaymentRejection:
    existing = await db.execute(
        select(PaymentRejection).where(
            PaymentRejection.payment_reference == event.payment_reference,
            PaymentRejection.reason == reason,
        ).limit(1)
    )
    rejection = existing.scalar_one_or_none()
    if rejection:
        logger.info(
            f"Payment {event.payment_reference} re-delivered; already held for review "
            f"(rejection {rejection.id})"
        )
        return rejection

    rejection = PaymentRejection(
        payment_reference=event.payment_reference,
        academy_id=event.academy_id,
        exam_id=event.exam_id,
        quantity=event.quantity,
        amount=to_money(event.amount),
        expected_amount=expected,
        reason=reason,
    )
    db.add(rejection)
    await db.commit()
    await db.refresh(rejection)
    logger.warning(
        f"Payment {event.payment_reference} rejected for academy {event.academy_id}: {reason}"
    )
    return rejection


async def on_payment_confirmed(
    event: PaymentConfirmedEvent,
    db: AsyncSession
) -> OperationResult:
    """
    Handle one "payment confirmed" delivery.

    Returns:
        CREDITED (new ledger entry), DUPLICATE (existing entry) or
        REJECTED (PaymentRejection retained, including unknown exams)
    """
    result = await db.execute(select(Exam).where(Exam.id == event.exam_id))
    exam = result.scalar_one_or_none()
    if not exam:
        rejection = await _record_rejection(event, f"Unknown exam {event.exam_id}", db)
        return OperationResult.failure(Outcome.REJECTED, rejection.reason, data=rejection)

    if event.quantity is None or event.quantity <= 0:
        rejection = await _record_rejection(event, f"Invalid quantity {event.quantity}", db)
        return OperationResult.failure(Outcome.REJECTED, rejection.reason, data=rejection)

    expected = expected_amount(exam, event.quantity)
    paid = to_money(event.amount)
    if paid is None or paid != expected:
        rejection = await _record_rejection(
            event,
            f"Amount mismatch: paid {event.amount}, expected {expected}",
            db,
            expected=expected,
        )
        return OperationResult.failure(Outcome.REJECTED, rejection.reason, data=rejection)

    credited = await ledger.credit(
        academy_id=event.academy_id,
        exam_id=event.exam_id,
        quantity=event.quantity,
        payment_reference=event.payment_reference,
        amount_paid=paid,
        db=db,
    )

    if credited.outcome == Outcome.ALREADY_CREDITED:
        return OperationResult.success(credited.data, outcome=Outcome.DUPLICATE,
                                       message="Payment already processed")
    return credited
