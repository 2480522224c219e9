"""
examhub/services/certificate_service.py
Certificate issuance for passing results.

Runs inside the scoring transaction and never commits. One certificate
per enrollment (UNIQUE enrollment_id); rendering is handled elsewhere.
"""
import logging
import secrets
import string
from datetime import datetime
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from examhub.orm.base import utcnow
from examhub.orm.certificate import Certificate
from examhub.orm.enrollment import Enrollment
from examhub.orm.exam_attempt import ExamAttempt

logger = logging.getLogger(__name__)

CERTIFICATE_PREFIX = "EP"
CERTIFICATE_ALPHABET = string.ascii_letters + string.digits


def generate_certificate_number(issued_at: Optional[datetime] = None) -> str:
    """EP-<year>-<8 random alphanumerics>"""
    year = (issued_at or utcnow()).year
    suffix = "".join(secrets.choice(CERTIFICATE_ALPHABET) for _ in range(8))
    return f"{CERTIFICATE_PREFIX}-{year}-{suffix}"


async def get_certificate_for_enrollment(
    enrollment_id: int,
    db: AsyncSession
) -> Optional[Certificate]:
    result = await db.execute(
        select(Certificate).where(Certificate.enrollment_id == enrollment_id)
    )
    return result.scalar_one_or_none()


async def issue_certificate(
    attempt: ExamAttempt,
    enrollment: Enrollment,
    db: AsyncSession,
    now: Optional[datetime] = None,
) -> Certificate:
    existing = await get_certificate_for_enrollment(enrollment.id, db)
    if existing:
        return existing

    now = now or utcnow()
    certificate = Certificate(
        enrollment_id=enrollment.id,
        attempt_id=attempt.id,
        student_id=attempt.student_id,
        exam_id=attempt.exam_id,
        academy_id=enrollment.academy_id,
        certificate_number=generate_certificate_number(now),
        issued_at=now,
    )
    db.add(certificate)
    await db.flush()

    logger.info(
        f"Certificate {certificate.certificate_number} issued to student {attempt.student_id} "
        f"for exam {attempt.exam_id}"
    )
    return certificate
