"""
Question store: tests, questions, users, answers and progress.

All functions take an ``AsyncSession`` and leave transaction boundaries to the
caller, except where noted.
"""
import logging
from datetime import datetime, timezone
from typing import List, Optional

from sqlalchemy import case, func, select
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncSession

from alcpt.core.errors import NotFound
from alcpt.models.orm import Question, Test, User, UserAnswer, UserProgress

logger = logging.getLogger(__name__)


def percentage(correct: int, total: int) -> int:
    """Rounded percentage, halves rounded up."""
    if total <= 0:
        return 0
    return (correct * 200 + total) // (2 * total)


def _insert(db: AsyncSession):
    # ON CONFLICT clauses live on the dialect-specific insert constructs
    if db.get_bind().dialect.name == "postgresql":
        return postgresql.insert
    return sqlite.insert


# ---------------------------------------------------------------- tests

async def list_tests(db: AsyncSession) -> List[Test]:
    return list((await db.scalars(select(Test).order_by(Test.test_number))).all())


async def get_test(db: AsyncSession, test_id: int) -> Optional[Test]:
    return await db.get(Test, test_id)


async def get_test_by_number(db: AsyncSession, test_number: str) -> Optional[Test]:
    return await db.scalar(select(Test).where(Test.test_number == test_number))


async def require_test(db: AsyncSession, test_id: int) -> Test:
    test = await get_test(db, test_id)
    if test is None:
        raise NotFound("Test not found", detail={"test_id": test_id})
    return test


# ---------------------------------------------------------------- questions

async def get_questions_by_test(db: AsyncSession, test_id: int) -> List[Question]:
    stmt = select(Question).where(Question.test_id == test_id).order_by(Question.question_index)
    return list((await db.scalars(stmt)).all())


async def count_questions(db: AsyncSession, test_id: int) -> int:
    return await db.scalar(select(func.count(Question.id)).where(Question.test_id == test_id)) or 0


async def get_random_question(db: AsyncSession, test_id: Optional[int] = None) -> Optional[Question]:
    stmt = select(Question)
    if test_id is not None:
        stmt = stmt.where(Question.test_id == test_id)
    return await db.scalar(stmt.order_by(func.random()).limit(1))


async def get_question(db: AsyncSession, question_id: int) -> Optional[Question]:
    return await db.get(Question, question_id)


async def require_question(db: AsyncSession, question_id: int) -> Question:
    question = await get_question(db, question_id)
    if question is None:
        raise NotFound("Question not found", detail={"question_id": question_id})
    return question


async def update_question_audio(db: AsyncSession, question: Question, audio_url: str) -> None:
    question.audio_url = audio_url
    await db.commit()


async def update_question_explanation(db: AsyncSession, question: Question, explanation: dict) -> None:
    question.arabic_explanation = explanation
    await db.commit()


# ---------------------------------------------------------------- users

async def get_user(db: AsyncSession, user_id: str) -> Optional[User]:
    return await db.get(User, user_id)


async def touch_user(db: AsyncSession, user_id: str, name: Optional[str] = None, email: Optional[str] = None) -> User:
    """Create the user on first sight, otherwise bump last activity."""
    now = datetime.now(timezone.utc)
    await db.execute(
        _insert(db)(User)
        .values(id=user_id, name=name or user_id, email=email, last_active_at=now)
        .on_conflict_do_nothing(index_elements=[User.id])
    )
    user = await db.get(User, user_id, populate_existing=True)
    user.last_active_at = now
    if name:
        user.name = name
    if email:
        user.email = email
    await db.flush()
    return user


# ---------------------------------------------------------------- answers & progress

async def record_answer(db: AsyncSession, user_id: str, question: Question, answer: str, is_correct: bool) -> UserProgress:
    """
    Store the user's current answer for a question and refresh test progress.

    A resubmission overwrites the previous answer. Progress totals are recomputed
    from the user's answers within the test, so resubmitting never double counts.
    Both rows are written as upserts so concurrent first submissions cannot
    collide on the unique constraints. Commits the transaction.
    """
    now = datetime.now(timezone.utc)
    insert = _insert(db)
    await db.execute(
        insert(UserAnswer)
        .values(user_id=user_id, question_id=question.id, answer=answer, is_correct=is_correct, answered_at=now)
        .on_conflict_do_update(
            index_elements=[UserAnswer.user_id, UserAnswer.question_id],
            set_={"answer": answer, "is_correct": is_correct, "answered_at": now},
        )
    )

    totals = (
        await db.execute(
            select(func.count(UserAnswer.id), func.sum(case((UserAnswer.is_correct.is_(True), 1), else_=0)))
            .join(Question, Question.id == UserAnswer.question_id)
            .where(UserAnswer.user_id == user_id, Question.test_id == question.test_id)
        )
    ).one()
    total, correct = int(totals[0] or 0), int(totals[1] or 0)
    score = percentage(correct, total)

    await db.execute(
        insert(UserProgress)
        .values(
            user_id=user_id, test_id=question.test_id, correct_answers=correct, total_answers=total,
            score=score, started_at=now, last_answered_at=now,
        )
        .on_conflict_do_update(
            index_elements=[UserProgress.user_id, UserProgress.test_id],
            set_={"correct_answers": correct, "total_answers": total, "score": score, "last_answered_at": now},
        )
    )
    progress = await db.scalar(
        select(UserProgress)
        .where(UserProgress.user_id == user_id, UserProgress.test_id == question.test_id)
        .execution_options(populate_existing=True)
    )
    await db.commit()
    return progress


async def get_user_answer(db: AsyncSession, user_id: str, question_id: int) -> Optional[UserAnswer]:
    return await db.scalar(
        select(UserAnswer)
        .where(UserAnswer.user_id == user_id, UserAnswer.question_id == question_id)
        .execution_options(populate_existing=True)
    )


async def get_progress_for_user(db: AsyncSession, user_id: str) -> List[UserProgress]:
    stmt = select(UserProgress).where(UserProgress.user_id == user_id).order_by(UserProgress.test_id)
    return list((await db.scalars(stmt)).all())


async def get_progress_for_test(db: AsyncSession, test_id: int, user_id: str) -> List[UserProgress]:
    stmt = select(UserProgress).where(UserProgress.test_id == test_id, UserProgress.user_id == user_id)
    return list((await db.scalars(stmt)).all())
