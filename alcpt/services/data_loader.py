"""
One-time ingestion of static per-test question files.

Each ``*.json`` file under the data directory describes one test::

    {
      "test_number": "065",
      "name": "ALCPT Form 065",
      "duration_minutes": 75,
      "questions": [
        {"question_index": 1, "question_text": "...", "correct_answer": "...",
         "other_options": ["...", "...", "..."]}
      ]
    }

``question_index`` defaults to the position in the list (1-based). Loading a
test that already has questions is a no-op.
"""
import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional

from pydantic import BaseModel, Field, field_validator
from sqlalchemy.ext.asyncio import AsyncSession

from alcpt.core.errors import ValidationError
from alcpt.models.orm import Question, Test
from alcpt.services import store

logger = logging.getLogger(__name__)


class QuestionFileEntry(BaseModel):
    question_index: Optional[int] = Field(default=None, ge=1)
    question_text: str = Field(min_length=1)
    correct_answer: str = Field(min_length=1)
    other_options: List[str]

    @field_validator("other_options")
    @classmethod
    def three_wrong_options(cls, v: List[str]) -> List[str]:
        if len(v) != 3:
            raise ValueError("expected exactly 3 incorrect options")
        return v


class ExamFile(BaseModel):
    test_number: str = Field(min_length=1)
    name: Optional[str] = None
    description: Optional[str] = None
    duration_minutes: Optional[int] = None
    questions: List[QuestionFileEntry]


@dataclass
class LoadOutcome:
    file: str
    test_id: int
    loaded: bool
    question_count: int


def list_test_files(data_dir: str | Path) -> List[str]:
    path = Path(data_dir)
    if not path.is_dir():
        logger.warning("Data directory %s does not exist", path)
        return []
    return sorted(p.name for p in path.glob("*.json"))


def read_test_file(path: Path) -> ExamFile:
    try:
        raw = json.loads(path.read_text(encoding="utf-8"))
        return ExamFile.model_validate(raw)
    except (json.JSONDecodeError, ValueError) as e:
        # pydantic.ValidationError is a ValueError
        raise ValidationError(f"Invalid test file {path.name}", detail={"error": str(e)}) from e


async def load_test_file(db: AsyncSession, path: str | Path) -> LoadOutcome:
    path = Path(path)
    data = read_test_file(path)

    test = await store.get_test_by_number(db, data.test_number)
    if test is not None and await store.count_questions(db, test.id) > 0:
        logger.info("Test %s already populated, skipping %s", data.test_number, path.name)
        return LoadOutcome(file=path.name, test_id=test.id, loaded=False, question_count=test.total_questions)

    if test is None:
        test = Test(
            test_number=data.test_number,
            name=data.name or f"ALCPT Test {data.test_number}",
            description=data.description,
            duration_minutes=data.duration_minutes,
        )
        db.add(test)
        await db.flush()

    for position, entry in enumerate(data.questions, start=1):
        db.add(Question(
            test_id=test.id,
            question_index=entry.question_index or position,
            question_text=entry.question_text,
            correct_answer=entry.correct_answer,
            other_options=list(entry.other_options),
        ))
    test.total_questions = len(data.questions)
    await db.commit()
    logger.info("Loaded %d questions for test %s from %s", len(data.questions), data.test_number, path.name)
    return LoadOutcome(file=path.name, test_id=test.id, loaded=True, question_count=len(data.questions))


async def load_all(db: AsyncSession, data_dir: str | Path) -> List[LoadOutcome]:
    return [await load_test_file(db, Path(data_dir) / name) for name in list_test_files(data_dir)]
