from typing import List, Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from alcpt.api.deps import get_artifacts, get_processor
from alcpt.core.config import settings
from alcpt.core.database import get_db
from alcpt.core.errors import NotFound
from alcpt.jobs.queue import BackgroundProcessor, JobPriority
from alcpt.models.orm import Question
from alcpt.models.schemas import LoadReport, QuestionOut, TestOut
from alcpt.services import data_loader, store
from alcpt.services.artifacts import ArtifactCache

router = APIRouter()


def prefetch_artifacts(processor: BackgroundProcessor, artifacts: ArtifactCache, question: Question) -> None:
    """Queue generation of whatever the question is still missing."""
    if not question.arabic_explanation:
        processor.enqueue_explanation(question.id, priority=JobPriority.HIGH)
    if question.is_listening and not artifacts.has_audio(question):
        processor.enqueue_audio(question.id, priority=JobPriority.HIGH)


@router.get("/tests", response_model=List[TestOut])
async def list_tests(db: AsyncSession = Depends(get_db)):
    return await store.list_tests(db)


@router.get("/tests/{identifier}", response_model=TestOut)
async def get_test(identifier: str, db: AsyncSession = Depends(get_db)):
    test = await store.get_test(db, int(identifier)) if identifier.isdigit() else None
    if test is None:
        # "065" style labels are test numbers, not ids
        test = await store.get_test_by_number(db, identifier)
    if test is None:
        raise NotFound("Test not found", detail={"test": identifier})
    return test


@router.get("/tests/{test_id}/questions", response_model=List[QuestionOut])
async def get_test_questions(test_id: int, db: AsyncSession = Depends(get_db)):
    await store.require_test(db, test_id)
    return await store.get_questions_by_test(db, test_id)


@router.get("/question", response_model=QuestionOut)
async def get_random_question(
    test_id: Optional[int] = Query(None, alias="testId"),
    db: AsyncSession = Depends(get_db),
    processor: BackgroundProcessor = Depends(get_processor),
    artifacts: ArtifactCache = Depends(get_artifacts),
):
    question = await store.get_random_question(db, test_id)
    if question is None:
        raise NotFound("No questions available", detail={"test_id": test_id})
    prefetch_artifacts(processor, artifacts, question)
    return question


@router.get("/questions/{question_id}", response_model=QuestionOut)
async def get_question(
    question_id: int,
    db: AsyncSession = Depends(get_db),
    processor: BackgroundProcessor = Depends(get_processor),
    artifacts: ArtifactCache = Depends(get_artifacts),
):
    question = await store.require_question(db, question_id)
    prefetch_artifacts(processor, artifacts, question)
    return question


@router.post("/load-test-data", response_model=LoadReport)
async def load_test_data(db: AsyncSession = Depends(get_db)):
    outcomes = await data_loader.load_all(db, settings.DATA_DIR)
    loaded = [o.file for o in outcomes if o.loaded]
    skipped = [o.file for o in outcomes if not o.loaded]
    questions = sum(o.question_count for o in outcomes if o.loaded)
    return LoadReport(
        message=f"Loaded {len(loaded)} test files ({questions} questions), skipped {len(skipped)}",
        loaded_files=loaded,
        skipped_files=skipped,
    )
