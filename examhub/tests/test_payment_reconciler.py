"""
Payment reconciler: at-least-once delivery, amount validation, signatures.
"""
import asyncio
import hashlib
import hmac
from decimal import Decimal

from sqlalchemy import func, select

from examhub.orm.exam_purchase import ExamPurchase
from examhub.orm.payment_rejection import PaymentRejection
from examhub.services import entitlement_ledger_service as ledger
from examhub.services.outcomes import Outcome
from examhub.services.payment_reconciler_service import (
    PaymentConfirmedEvent,
    expected_amount,
    on_payment_confirmed,
    to_money,
    verify_signature,
)

from conftest import create_exam


def event(exam_id, quantity=2, reference="pay_1", amount="50.00", academy_id=1):
    return PaymentConfirmedEvent(
        academy_id=academy_id,
        exam_id=exam_id,
        quantity=quantity,
        payment_reference=reference,
        amount=amount,
    )


async def count(db, model):
    result = await db.execute(select(func.count(model.id)))
    return result.scalar()


class TestReconciliation:

    async def test_confirmed_payment_credits_seats(self, db_session):
        exam = await create_exam(db_session, price="25.00")

        result = await on_payment_confirmed(event(exam.id), db_session)

        assert result.outcome == Outcome.CREDITED
        assert result.data.amount_paid == Decimal("50.00")
        assert await ledger.available_seats(1, exam.id, db_session) == 2

    async def test_redelivery_is_duplicate(self, db_session):
        exam = await create_exam(db_session, price="25.00")

        first = await on_payment_confirmed(event(exam.id), db_session)
        second = await on_payment_confirmed(event(exam.id), db_session)

        assert second.outcome == Outcome.DUPLICATE
        assert second.ok
        assert second.data.id == first.data.id
        assert await count(db_session, ExamPurchase) == 1
        assert await ledger.available_seats(1, exam.id, db_session) == 2

    async def test_out_of_order_deliveries(self, db_session):
        exam = await create_exam(db_session, price="25.00")

        for reference in ["pay_3", "pay_1", "pay_3", "pay_2", "pay_1"]:
            await on_payment_confirmed(event(exam.id, quantity=1, amount="25", reference=reference), db_session)

        assert await count(db_session, ExamPurchase) == 3
        assert await ledger.available_seats(1, exam.id, db_session) == 3

    async def test_concurrent_duplicate_deliveries(self, file_session_factory):
        async with file_session_factory() as db:
            exam = await create_exam(db, price="25.00")

        async def deliver():
            async with file_session_factory() as db:
                return await on_payment_confirmed(event(exam.id), db)

        results = await asyncio.gather(*[deliver() for _ in range(3)])
        outcomes = sorted(r.outcome.value for r in results)

        assert outcomes == ["CREDITED", "DUPLICATE", "DUPLICATE"]
        async with file_session_factory() as db:
            assert await ledger.available_seats(1, exam.id, db) == 2


class TestRejection:

    async def test_amount_mismatch_is_rejected_and_retained(self, db_session):
        exam = await create_exam(db_session, price="25.00")

        result = await on_payment_confirmed(event(exam.id, amount="49.99"), db_session)

        assert result.outcome == Outcome.REJECTED
        assert not result.ok
        rejection = result.data
        assert rejection.expected_amount == Decimal("50.00")
        assert rejection.amount == Decimal("49.99")
        assert "mismatch" in rejection.reason
        assert await count(db_session, PaymentRejection) == 1
        assert await count(db_session, ExamPurchase) == 0

    async def test_non_positive_quantity_is_rejected(self, db_session):
        exam = await create_exam(db_session, price="25.00")

        result = await on_payment_confirmed(event(exam.id, quantity=0, amount="0"), db_session)

        assert result.outcome == Outcome.REJECTED
        assert await count(db_session, PaymentRejection) == 1
        assert await ledger.available_seats(1, exam.id, db_session) == 0

    async def test_unknown_exam_is_rejected_and_retained(self, db_session):
        result = await on_payment_confirmed(event(404), db_session)

        assert result.outcome == Outcome.REJECTED
        assert result.data.reason == "Unknown exam 404"
        assert await count(db_session, PaymentRejection) == 1

    async def test_redelivered_rejection_is_stored_once(self, db_session):
        exam = await create_exam(db_session, price="25.00")

        results = [
            await on_payment_confirmed(event(exam.id, amount="49.99"), db_session)
            for _ in range(5)
        ]

        assert all(r.outcome == Outcome.REJECTED for r in results)
        assert len({r.data.id for r in results}) == 1
        assert await count(db_session, PaymentRejection) == 1

    async def test_different_rejection_reasons_are_kept_apart(self, db_session):
        exam = await create_exam(db_session, price="25.00")

        await on_payment_confirmed(event(exam.id, amount="49.99"), db_session)
        await on_payment_confirmed(event(exam.id, quantity=0, amount="0"), db_session)

        assert await count(db_session, PaymentRejection) == 2

    async def test_rejected_reference_can_still_be_credited_later(self, db_session):
        exam = await create_exam(db_session, price="25.00")

        await on_payment_confirmed(event(exam.id, amount="10"), db_session)
        corrected = await on_payment_confirmed(event(exam.id, amount="50"), db_session)

        assert corrected.outcome == Outcome.CREDITED


class TestMoney:

    def test_to_money_quantizes_to_cents(self):
        assert to_money("10") == Decimal("10.00")
        assert to_money(19.999) == Decimal("20.00")
        assert to_money("abc") is None
        assert to_money(None) is None

    async def test_expected_amount(self, db_session):
        exam = await create_exam(db_session, price="19.99")
        assert expected_amount(exam, 3) == Decimal("59.97")


class TestSignature:

    def test_empty_secret_disables_verification(self):
        assert verify_signature(b"{}", None, "")

    def test_valid_signature(self):
        body = b'{"payment_reference": "pay_1"}'
        digest = hmac.new(b"whsec", body, hashlib.sha256).hexdigest()

        assert verify_signature(body, digest, "whsec")
        assert verify_signature(body, f"sha256={digest}", "whsec")

    def test_invalid_or_missing_signature(self):
        body = b'{"payment_reference": "pay_1"}'

        assert not verify_signature(body, "deadbeef", "whsec")
        assert not verify_signature(body, None, "whsec")
