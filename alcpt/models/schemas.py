"""
API payload models. JSON field names are camelCase on the wire.
"""
from datetime import datetime
from typing import Any, List, Optional

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, from_attributes=True)


class TestOut(CamelModel):
    id: int
    test_number: str
    name: str
    description: Optional[str] = None
    total_questions: int
    duration_minutes: Optional[int] = None
    created_at: Optional[datetime] = None


class QuestionOut(CamelModel):
    id: int
    test_id: int
    question_index: int
    question_type: str
    question_text: str
    correct_answer: str
    other_options: List[str]
    audio_url: Optional[str] = None
    arabic_explanation: Optional[dict[str, Any]] = None


class AudioOut(CamelModel):
    audio_url: str


class FeedbackOut(CamelModel):
    is_correct: bool
    correct_answer: str
    selected_answer: str
    explanation: Optional[dict[str, Any]] = None


class ProgressOut(CamelModel):
    id: int
    user_id: str
    test_id: int
    correct_answers: int
    total_answers: int
    score: int
    started_at: Optional[datetime] = None
    last_answered_at: Optional[datetime] = None


class UserOut(CamelModel):
    id: str
    name: str
    email: Optional[str] = None
    created_at: Optional[datetime] = None
    last_active_at: Optional[datetime] = None


class LoadReport(CamelModel):
    message: str
    loaded_files: List[str]
    skipped_files: List[str]
