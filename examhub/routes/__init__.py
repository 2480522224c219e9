"""
examhub/routes/__init__.py
Route registration
"""
from fastapi import APIRouter

from examhub.routes import enrollments, exam_attempts, payments

router = APIRouter()

router.include_router(enrollments.router)
router.include_router(exam_attempts.router)
router.include_router(payments.webhook_router)
router.include_router(payments.purchases_router)
