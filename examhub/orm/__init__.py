from .base import Base

# Reference data (read-only)
from .exam import Exam, Question, ExamStatus, QuestionType

# Entitlement ledger
from .exam_purchase import ExamPurchase, PurchaseStatus
from .payment_rejection import PaymentRejection

# Enrollment + attempts
from .enrollment import Enrollment, EnrollmentStatus
from .exam_attempt import ExamAttempt, AttemptStatus
from .exam_result import ExamResult
from .certificate import Certificate
