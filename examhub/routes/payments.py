"""
examhub/routes/payments.py
Payment webhook and seat ledger API Routes

- POST /api/payments/webhook: "payment confirmed" deliveries from the
  provider (at-least-once; duplicates answer 200 DUPLICATE)
- GET /api/exam-purchases/balance: available seats for an exam
- GET /api/exam-purchases: the academy's ledger entries
"""
import json
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Header, Query, Request
from fastapi.responses import JSONResponse
from pydantic import ValidationError
from sqlalchemy.ext.asyncio import AsyncSession

from examhub.config.settings import settings
from examhub.database import get_db
from examhub.errors import BadRequestError, ErrorCode, UnauthorizedError, outcome_status_code, outcome_to_error
from examhub.rate_limit import limiter
from examhub.rbac import Actor, ActorRole, require_role
from examhub.schemas.payment import PaymentConfirmedPayload
from examhub.services import entitlement_ledger_service as ledger
from examhub.services import payment_reconciler_service as reconciler

logger = logging.getLogger(__name__)

webhook_router = APIRouter(prefix="/api/payments", tags=["payments"])
purchases_router = APIRouter(prefix="/api/exam-purchases", tags=["exam-purchases"])

SIGNATURE_HEADER = "X-Payment-Signature"


@webhook_router.post("/webhook")
@limiter.limit(lambda: settings.WEBHOOK_RATE_LIMIT)
async def payment_webhook(
    request: Request,
    x_payment_signature: Optional[str] = Header(None, alias=SIGNATURE_HEADER),
    db: AsyncSession = Depends(get_db)
):
    """
    Credit seats for a confirmed payment.

    - 200 CREDITED: new ledger entry
    - 200 DUPLICATE: payment_reference already credited, nothing changed
    - 202 REJECTED: unknown exam, amount or quantity invalid, kept for
      manual review
    """
    body = await request.body()
    if not reconciler.verify_signature(body, x_payment_signature, settings.PAYMENT_WEBHOOK_SECRET):
        logger.warning("Payment webhook rejected: bad signature")
        raise UnauthorizedError("Invalid webhook signature", code=ErrorCode.SIGNATURE_INVALID)

    try:
        payload = PaymentConfirmedPayload.model_validate(json.loads(body or b"null"))
    except (json.JSONDecodeError, ValidationError) as e:
        logger.warning(f"Malformed payment webhook body: {e}")
        raise BadRequestError("Malformed payment event")

    event = reconciler.PaymentConfirmedEvent(
        academy_id=payload.academy_id,
        exam_id=payload.exam_id,
        quantity=payload.quantity,
        payment_reference=payload.payment_reference,
        amount=payload.amount,
    )
    result = await reconciler.on_payment_confirmed(event, db)

    if not result.ok:
        raise outcome_to_error(result, {"payment_reference": event.payment_reference})

    return JSONResponse(
        status_code=outcome_status_code(result.outcome),
        content={
            "success": True,
            "outcome": result.outcome.value,
            "purchase": result.data.to_dict(),
        },
    )


@purchases_router.get("/balance")
async def seat_balance(
    exam_id: int = Query(..., description="Exam to check"),
    academy_id: Optional[int] = Query(None, description="Academy (admin only)"),
    actor: Actor = Depends(require_role([ActorRole.ACADEMY, ActorRole.SUPER_ADMIN])),
    db: AsyncSession = Depends(get_db)
):
    """Seats still available to enroll students, read live from the ledger."""
    academy_id = _resolve_academy(actor, academy_id)
    seats = await ledger.available_seats(academy_id, exam_id, db)
    return {
        "success": True,
        "academy_id": academy_id,
        "exam_id": exam_id,
        "available_seats": seats,
    }


@purchases_router.get("")
async def list_purchases(
    exam_id: Optional[int] = Query(None, description="Filter by exam"),
    academy_id: Optional[int] = Query(None, description="Academy (admin only)"),
    actor: Actor = Depends(require_role([ActorRole.ACADEMY, ActorRole.SUPER_ADMIN])),
    db: AsyncSession = Depends(get_db)
):
    academy_id = _resolve_academy(actor, academy_id)
    purchases = await ledger.list_purchases(academy_id, db, exam_id=exam_id)
    return {
        "success": True,
        "purchases": [p.to_dict() for p in purchases],
        "count": len(purchases),
    }


def _resolve_academy(actor: Actor, requested: Optional[int]) -> int:
    if actor.is_admin:
        if requested is None:
            raise BadRequestError("academy_id is required")
        return requested
    if actor.academy_id is None:
        raise BadRequestError("Actor is not attached to an academy")
    return actor.academy_id
