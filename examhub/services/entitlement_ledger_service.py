"""
examhub/services/entitlement_ledger_service.py
Entitlement Ledger: purchased vs. consumed exam seats

Features:
- Idempotent credit keyed by payment_reference (UNIQUE constraint)
- Atomic debit: guarded UPDATE per entry, so concurrent debits can never
  push quantity_consumed past quantity_purchased
- Oldest purchase consumed first (created_at, id) for auditable order
- Only ACTIVE, unexpired entries are debitable

Rules:
- credit() owns its transaction: it commits, or rolls back on a lost race
- debit() runs inside the caller's transaction and never commits, so the
  enrollment manager can roll a debit back together with a failed insert
- Balances are always read from the database, never cached
"""
import logging
from datetime import datetime
from decimal import Decimal
from typing import List, Optional, Tuple

from sqlalchemy import select, update, func, and_, or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from examhub.orm.base import utcnow
from examhub.orm.exam_purchase import ExamPurchase, PurchaseStatus
from examhub.services.outcomes import Outcome, OperationResult

logger = logging.getLogger(__name__)

# Re-reads of the candidate list when a concurrent debit drains an entry
MAX_DEBIT_PASSES = 5


def _debitable_filter(academy_id: int, exam_id: int, now: datetime):
    return and_(
        ExamPurchase.academy_id == academy_id,
        ExamPurchase.exam_id == exam_id,
        ExamPurchase.status == PurchaseStatus.ACTIVE,
        ExamPurchase.quantity_consumed < ExamPurchase.quantity_purchased,
        or_(ExamPurchase.expires_at.is_(None), ExamPurchase.expires_at > now),
    )


async def get_purchase_by_reference(
    payment_reference: str,
    db: AsyncSession
) -> Optional[ExamPurchase]:
    result = await db.execute(
        select(ExamPurchase).where(ExamPurchase.payment_reference == payment_reference)
    )
    return result.scalar_one_or_none()


async def credit(
    academy_id: int,
    exam_id: int,
    quantity: int,
    payment_reference: str,
    db: AsyncSession,
    amount_paid: Decimal = Decimal("0"),
    expires_at: Optional[datetime] = None,
) -> OperationResult:
    """
    Add a ledger entry for a confirmed payment.

    Returns:
        CREDITED with the new entry, or ALREADY_CREDITED with the existing
        entry when payment_reference was seen before (no state change).
    """
    existing = await get_purchase_by_reference(payment_reference, db)
    if existing:
        logger.info(f"Payment {payment_reference} already credited as entry {existing.id}")
        return OperationResult.success(existing, outcome=Outcome.ALREADY_CREDITED,
                                       message="Payment reference already credited")

    entry = ExamPurchase(
        academy_id=academy_id,
        exam_id=exam_id,
        quantity_purchased=quantity,
        quantity_consumed=0,
        payment_reference=payment_reference,
        amount_paid=amount_paid,
        status=PurchaseStatus.ACTIVE,
        expires_at=expires_at,
    )
    db.add(entry)

    try:
        await db.commit()
    except IntegrityError:
        # A concurrent delivery inserted the same reference first
        await db.rollback()
        existing = await get_purchase_by_reference(payment_reference, db)
        if existing is None:
            raise
        logger.info(f"Payment {payment_reference} lost insert race to entry {existing.id}")
        return OperationResult.success(existing, outcome=Outcome.ALREADY_CREDITED,
                                       message="Payment reference already credited")

    await db.refresh(entry)
    logger.info(
        f"Ledger credit: entry={entry.id} academy={academy_id} exam={exam_id} "
        f"seats={quantity} ref={payment_reference}"
    )
    return OperationResult.success(entry, outcome=Outcome.CREDITED)


async def _candidate_entries(
    academy_id: int,
    exam_id: int,
    now: datetime,
    db: AsyncSession
) -> List[ExamPurchase]:
    # FOR UPDATE is a no-op on SQLite; the guarded UPDATE below is what holds there
    result = await db.execute(
        select(ExamPurchase)
        .where(_debitable_filter(academy_id, exam_id, now))
        .order_by(ExamPurchase.created_at.asc(), ExamPurchase.id.asc())
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    return list(result.scalars().all())


async def _consume(entry_id: int, take: int, db: AsyncSession) -> bool:
    """Guarded increment; False when a concurrent debit got there first."""
    result = await db.execute(
        update(ExamPurchase)
        .where(
            ExamPurchase.id == entry_id,
            ExamPurchase.quantity_consumed + take <= ExamPurchase.quantity_purchased,
        )
        .values(
            quantity_consumed=ExamPurchase.quantity_consumed + take,
            updated_at=utcnow(),
        )
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


async def _release(entry_id: int, take: int, db: AsyncSession) -> None:
    await db.execute(
        update(ExamPurchase)
        .where(ExamPurchase.id == entry_id)
        .values(quantity_consumed=ExamPurchase.quantity_consumed - take)
        .execution_options(synchronize_session=False)
    )


async def debit(
    academy_id: int,
    exam_id: int,
    db: AsyncSession,
    quantity: int = 1,
    now: Optional[datetime] = None,
) -> OperationResult:
    """
    Consume `quantity` seats for (academy, exam), oldest purchase first.

    Runs in the caller's transaction; the caller commits or rolls back.

    Returns:
        OK with a list of (entry_id, seats_taken) tuples, or
        INSUFFICIENT_SEATS with no net change to the ledger.
    """
    if quantity <= 0:
        raise ValueError("debit quantity must be positive")

    now = now or utcnow()
    remaining = quantity
    taken: List[Tuple[int, int]] = []

    for _ in range(MAX_DEBIT_PASSES):
        candidates = await _candidate_entries(academy_id, exam_id, now, db)
        if not candidates:
            break

        contended = False
        for entry in candidates:
            if remaining == 0:
                break
            take = min(remaining, entry.quantity_available)
            if take <= 0:
                continue
            if await _consume(entry.id, take, db):
                taken.append((entry.id, take))
                remaining -= take
            else:
                contended = True

        if remaining == 0 or not contended:
            break

    if remaining > 0:
        for entry_id, take in taken:
            await _release(entry_id, take, db)
        logger.info(
            f"Ledger debit refused: academy={academy_id} exam={exam_id} "
            f"requested={quantity} short_by={remaining}"
        )
        return OperationResult.failure(
            Outcome.INSUFFICIENT_SEATS,
            f"No purchased seats available for exam {exam_id}",
        )

    logger.info(f"Ledger debit: academy={academy_id} exam={exam_id} entries={taken}")
    return OperationResult.success(taken)


async def available_seats(
    academy_id: int,
    exam_id: int,
    db: AsyncSession,
    now: Optional[datetime] = None,
) -> int:
    """Unconsumed seats across all debitable entries."""
    now = now or utcnow()
    result = await db.execute(
        select(
            func.coalesce(
                func.sum(ExamPurchase.quantity_purchased - ExamPurchase.quantity_consumed), 0
            )
        ).where(_debitable_filter(academy_id, exam_id, now))
    )
    return int(result.scalar() or 0)


async def list_purchases(
    academy_id: int,
    db: AsyncSession,
    exam_id: Optional[int] = None,
) -> List[ExamPurchase]:
    stmt = select(ExamPurchase).where(ExamPurchase.academy_id == academy_id)
    if exam_id is not None:
        stmt = stmt.where(ExamPurchase.exam_id == exam_id)
    result = await db.execute(
        stmt.order_by(ExamPurchase.created_at.asc(), ExamPurchase.id.asc())
    )
    return list(result.scalars().all())
