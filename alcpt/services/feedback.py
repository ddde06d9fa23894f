"""
Answer submission: grade, make sure an explanation exists, record progress.
"""
import logging
from typing import Any, Dict, Optional

import pydantic
from pydantic import BaseModel, ConfigDict, Field, StrictStr
from sqlalchemy.ext.asyncio import AsyncSession

from alcpt.core.auth import TokenData
from alcpt.core.errors import AppError, ValidationError
from alcpt.models.schemas import FeedbackOut
from alcpt.services import store
from alcpt.services.artifacts import ArtifactCache

logger = logging.getLogger(__name__)


class AnswerSubmission(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    question_id: int = Field(alias="questionId")
    selected_answer: StrictStr = Field(alias="selectedAnswer", min_length=1)


def parse_submission(question_id: int, payload: Any) -> AnswerSubmission:
    if not isinstance(payload, dict):
        raise ValidationError("Submission body must be a JSON object")
    try:
        return AnswerSubmission.model_validate({"questionId": question_id, "selectedAnswer": payload.get("selectedAnswer")})
    except pydantic.ValidationError as e:
        raise ValidationError(
            "selectedAnswer must be a non-empty string",
            detail={"errors": [err["msg"] for err in e.errors()]},
        ) from e


async def submit_answer(
    db: AsyncSession,
    artifacts: ArtifactCache,
    user: TokenData,
    question_id: int,
    payload: Any,
) -> FeedbackOut:
    """
    Grade a submitted answer and return the feedback payload.

    Order of checks: unknown question (NotFound), malformed body
    (ValidationError). A failed explanation generation does not fail the
    submission; the feedback is returned without an explanation.
    """
    question = await store.require_question(db, question_id)
    submission = parse_submission(question_id, payload)

    is_correct = submission.selected_answer == question.correct_answer

    explanation: Optional[Dict[str, Any]] = question.arabic_explanation
    if not explanation:
        try:
            explanation = await artifacts.ensure_explanation(db, question)
        except AppError as e:
            logger.error("Failed to generate Arabic explanation for question %s: %s", question.id, e.message)
            explanation = None

    await store.touch_user(db, user.sub, name=user.name, email=user.email)
    await store.record_answer(db, user.sub, question, submission.selected_answer, is_correct)

    return FeedbackOut(
        is_correct=is_correct,
        correct_answer=question.correct_answer,
        selected_answer=submission.selected_answer,
        explanation=explanation,
    )
