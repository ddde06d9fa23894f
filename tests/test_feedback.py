"""
Tests for answer submission, grading and progress tracking.
"""
import asyncio

import pytest
from sqlalchemy import func, select

from conftest import FakeRedis

from alcpt.core.auth import TokenData
from alcpt.core.cache import ArtifactLocks
from alcpt.core.errors import NotFound, ValidationError
from alcpt.models.orm import UserAnswer
from alcpt.services import store
from alcpt.services.artifacts import ArtifactCache
from alcpt.services.feedback import submit_answer

STUDENT = TokenData(sub="student-1", name="Student One", roles=["student"])


class TestGrading:
    @pytest.mark.asyncio
    async def test_correct_answer(self, db, artifacts, exam):
        feedback = await submit_answer(db, artifacts, STUDENT, exam["listening"][0], {"selectedAnswer": "bread"})

        assert feedback.is_correct is True
        assert feedback.correct_answer == "bread"
        assert feedback.selected_answer == "bread"
        assert feedback.explanation["الإجابة_الصحيحة"] == "bread"

    @pytest.mark.asyncio
    async def test_wrong_answer(self, db, artifacts, exam):
        feedback = await submit_answer(db, artifacts, STUDENT, exam["listening"][0], {"selectedAnswer": "eggs"})

        assert feedback.is_correct is False
        assert feedback.correct_answer == "bread"

    @pytest.mark.asyncio
    async def test_comparison_is_exact(self, db, artifacts, exam):
        feedback = await submit_answer(db, artifacts, STUDENT, exam["listening"][0], {"selectedAnswer": "Bread "})
        assert feedback.is_correct is False

    @pytest.mark.asyncio
    async def test_wire_format_is_camel_case(self, db, artifacts, exam):
        feedback = await submit_answer(db, artifacts, STUDENT, exam["reading"], {"selectedAnswer": "walks"})
        payload = feedback.model_dump(by_alias=True)
        assert set(payload) == {"isCorrect", "correctAnswer", "selectedAnswer", "explanation"}


class TestValidation:
    @pytest.mark.asyncio
    async def test_unknown_question_reported_before_bad_body(self, db, artifacts, exam):
        with pytest.raises(NotFound):
            await submit_answer(db, artifacts, STUDENT, 9999, {"selectedAnswer": 42})

    @pytest.mark.asyncio
    @pytest.mark.parametrize("payload", [{}, {"selectedAnswer": ""}, {"selectedAnswer": 3}, None, ["bread"]])
    async def test_malformed_body(self, db, artifacts, exam, payload):
        with pytest.raises(ValidationError):
            await submit_answer(db, artifacts, STUDENT, exam["listening"][0], payload)

    @pytest.mark.asyncio
    async def test_malformed_body_records_nothing(self, db, artifacts, exam):
        with pytest.raises(ValidationError):
            await submit_answer(db, artifacts, STUDENT, exam["listening"][0], {"selectedAnswer": ""})
        assert await store.get_user_answer(db, STUDENT.sub, exam["listening"][0]) is None


class TestExplanationOnSubmit:
    @pytest.mark.asyncio
    async def test_generated_once_and_reused(self, db, artifacts, exam, explainer):
        question_id = exam["reading"]
        await submit_answer(db, artifacts, STUDENT, question_id, {"selectedAnswer": "walk"})
        await submit_answer(db, artifacts, STUDENT, question_id, {"selectedAnswer": "walks"})
        assert explainer.calls == [question_id]

    @pytest.mark.asyncio
    async def test_generation_failure_does_not_fail_submission(self, db, artifacts, exam, explainer, caplog):
        explainer.fail = True
        question_id = exam["listening"][1]

        feedback = await submit_answer(db, artifacts, STUDENT, question_id, {"selectedAnswer": "in the garage"})

        assert feedback.is_correct is True
        assert feedback.explanation is None
        assert any("Failed to generate Arabic explanation" in r.getMessage() for r in caplog.records)
        progress = await store.get_progress_for_test(db, exam["test_id"], STUDENT.sub)
        assert progress[0].total_answers == 1


    @pytest.mark.asyncio
    async def test_busy_redis_lock_does_not_fail_submission(self, db, tmp_path, speech, explainer, exam):
        artifacts = ArtifactCache(speech, explainer, locks=ArtifactLocks(FakeRedis(busy=True)),
                                  storage_dir=tmp_path / "audio")

        feedback = await submit_answer(db, artifacts, STUDENT, exam["listening"][0], {"selectedAnswer": "bread"})

        assert feedback.is_correct is True
        assert feedback.explanation is None
        assert explainer.calls == []
        [progress] = await store.get_progress_for_test(db, exam["test_id"], STUDENT.sub)
        assert progress.correct_answers == 1


class TestProgress:
    @pytest.mark.asyncio
    async def test_progress_accumulates(self, db, artifacts, exam):
        first, second = exam["listening"]
        await submit_answer(db, artifacts, STUDENT, first, {"selectedAnswer": "bread"})
        await submit_answer(db, artifacts, STUDENT, second, {"selectedAnswer": "at sea"})
        await submit_answer(db, artifacts, STUDENT, exam["reading"], {"selectedAnswer": "walks"})

        [progress] = await store.get_progress_for_test(db, exam["test_id"], STUDENT.sub)
        assert progress.total_answers == 3
        assert progress.correct_answers == 2
        assert progress.score == 67

    @pytest.mark.asyncio
    async def test_resubmission_replaces_previous_answer(self, db, artifacts, exam):
        question_id = exam["listening"][0]
        await submit_answer(db, artifacts, STUDENT, question_id, {"selectedAnswer": "eggs"})
        await submit_answer(db, artifacts, STUDENT, question_id, {"selectedAnswer": "bread"})

        answers = await db.scalar(
            select(func.count(UserAnswer.id)).where(UserAnswer.user_id == STUDENT.sub)
        )
        assert answers == 1
        answer = await store.get_user_answer(db, STUDENT.sub, question_id)
        assert answer.answer == "bread"
        assert answer.is_correct is True

        [progress] = await store.get_progress_for_test(db, exam["test_id"], STUDENT.sub)
        assert progress.total_answers == 1
        assert progress.correct_answers == 1
        assert progress.score == 100

    @pytest.mark.asyncio
    async def test_concurrent_first_submissions_share_one_row(self, session_factory, artifacts, exam):
        question_id = exam["reading"]

        async def submit(answer):
            async with session_factory() as session:
                return await submit_answer(session, artifacts, STUDENT, question_id, {"selectedAnswer": answer})

        results = await asyncio.gather(submit("walk"), submit("walks"))

        assert {r.selected_answer for r in results} == {"walk", "walks"}
        async with session_factory() as check:
            answers = await check.scalar(
                select(func.count(UserAnswer.id)).where(UserAnswer.user_id == STUDENT.sub)
            )
            [progress] = await store.get_progress_for_test(check, exam["test_id"], STUDENT.sub)
        assert answers == 1
        assert progress.total_answers == 1

    @pytest.mark.asyncio
    async def test_progress_is_per_user(self, db, artifacts, exam):
        other = TokenData(sub="student-2", roles=["student"])
        await submit_answer(db, artifacts, STUDENT, exam["reading"], {"selectedAnswer": "walks"})
        await submit_answer(db, artifacts, other, exam["reading"], {"selectedAnswer": "walk"})

        [mine] = await store.get_progress_for_user(db, STUDENT.sub)
        [theirs] = await store.get_progress_for_user(db, other.sub)
        assert (mine.correct_answers, theirs.correct_answers) == (1, 0)

    @pytest.mark.asyncio
    async def test_user_created_on_first_submit(self, db, artifacts, exam):
        await submit_answer(db, artifacts, STUDENT, exam["reading"], {"selectedAnswer": "walks"})
        user = await store.get_user(db, STUDENT.sub)
        assert user.name == "Student One"


@pytest.mark.parametrize(
    "correct,total,expected",
    [(0, 0, 0), (1, 3, 33), (2, 3, 67), (1, 8, 13), (3, 8, 38), (5, 5, 100)],
)
def test_score_rounds_halves_up(correct, total, expected):
    assert store.percentage(correct, total) == expected
