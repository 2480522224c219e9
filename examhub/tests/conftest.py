"""
Shared fixtures for the engine test-suite.

Every test gets a fresh database built from Base.metadata:
- `db_session`: in-memory SQLite (one shared connection)
- `file_session_factory`: temp-file SQLite for tests that need truly
  concurrent sessions
"""
from datetime import datetime
from decimal import Decimal
from typing import AsyncGenerator, List, Optional

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession

from examhub.config.settings import settings
from examhub.database import build_engine, build_sessionmaker, get_db
from examhub.orm.base import Base
from examhub.orm.exam import Exam, ExamStatus, Question, QuestionType
from examhub.rbac import create_access_token
from examhub.services import entitlement_ledger_service as ledger

TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"

T0 = datetime(2026, 3, 2, 9, 0, 0)


@pytest.fixture(autouse=True)
def fixed_settings(monkeypatch):
    monkeypatch.setattr(settings, "SUBMISSION_GRACE_SECONDS", 10)
    monkeypatch.setattr(settings, "PAYMENT_WEBHOOK_SECRET", "")
    monkeypatch.setattr(settings, "JWT_SECRET_KEY", "test-secret")


@pytest_asyncio.fixture
async def session_factory():
    engine = build_engine(TEST_DATABASE_URL)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield build_sessionmaker(engine)

    await engine.dispose()


@pytest_asyncio.fixture
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    """Create a test database session."""
    async with session_factory() as session:
        yield session


@pytest_asyncio.fixture
async def file_session_factory(tmp_path):
    """Sessions on a temp-file database, each with its own connection."""
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'engine.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield build_sessionmaker(engine)

    await engine.dispose()


@pytest_asyncio.fixture
async def client(session_factory) -> AsyncGenerator[AsyncClient, None]:
    from examhub.main import app

    async def override_get_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac
    app.dependency_overrides.clear()


# ============================================================================
# Factories
# ============================================================================

async def create_exam(
    db: AsyncSession,
    duration_minutes: int = 30,
    pass_threshold: float = 60.0,
    price: str = "25.00",
    status: ExamStatus = ExamStatus.PUBLISHED,
    questions: Optional[List[dict]] = None,
) -> Exam:
    """Exam with a default three-question answer key."""
    if questions is None:
        questions = [
            {"question_type": QuestionType.SINGLE_CHOICE, "correct_answer": "b"},
            {"question_type": QuestionType.TRUE_FALSE, "correct_answer": True},
            {"question_type": QuestionType.MULTI_SELECT, "correct_answer": ["a", "c"]},
        ]

    exam = Exam(
        title="Certified Exam Proctor",
        duration_minutes=duration_minutes,
        pass_threshold=pass_threshold,
        price=Decimal(price),
        status=status,
    )
    db.add(exam)
    await db.flush()

    for fields in questions:
        db.add(Question(exam_id=exam.id, **fields))
    await db.commit()

    return await _reload_exam(db, exam.id)


async def _reload_exam(db: AsyncSession, exam_id: int) -> Exam:
    from sqlalchemy import select

    result = await db.execute(
        select(Exam).where(Exam.id == exam_id).execution_options(populate_existing=True)
    )
    return result.scalar_one()


async def fund(
    db: AsyncSession,
    academy_id: int,
    exam_id: int,
    seats: int,
    reference: str,
    expires_at: Optional[datetime] = None,
):
    result = await ledger.credit(
        academy_id=academy_id,
        exam_id=exam_id,
        quantity=seats,
        payment_reference=reference,
        db=db,
        expires_at=expires_at,
    )
    return result.data


def question_ids(exam: Exam) -> List[str]:
    return [str(q.id) for q in sorted(exam.questions, key=lambda q: q.id)]


def auth_header(actor_id: int, role: str, academy_id: Optional[int] = None) -> dict:
    token = create_access_token({"sub": str(actor_id), "role": role, "academy_id": academy_id})
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def student_headers():
    return auth_header(101, "STUDENT", academy_id=1)


@pytest.fixture
def academy_headers():
    return auth_header(900, "ACADEMY", academy_id=1)
