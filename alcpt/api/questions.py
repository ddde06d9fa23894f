import json
from typing import Any, Dict

from fastapi import APIRouter, Body, Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from alcpt.api.deps import get_artifacts
from alcpt.core.auth import TokenData, get_current_user
from alcpt.core.database import get_db
from alcpt.models.schemas import AudioOut, FeedbackOut
from alcpt.services import store
from alcpt.services.artifacts import ArtifactCache
from alcpt.services.explanations import FormattedQuestion
from alcpt.services.feedback import submit_answer

router = APIRouter()


@router.post("/questions/{question_id}/audio", response_model=AudioOut)
async def generate_audio(
    question_id: int,
    db: AsyncSession = Depends(get_db),
    artifacts: ArtifactCache = Depends(get_artifacts),
):
    question = await store.require_question(db, question_id)
    return AudioOut(audio_url=await artifacts.ensure_audio(db, question))


@router.post("/questions/{question_id}/submit", response_model=FeedbackOut)
async def submit(
    question_id: int,
    request: Request,
    user: TokenData = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    artifacts: ArtifactCache = Depends(get_artifacts),
):
    # Unknown question is reported before a malformed body
    try:
        payload = await request.json()
    except json.JSONDecodeError:
        payload = None
    return await submit_answer(db, artifacts, user, question_id, payload)


@router.post("/format-question", response_model=FormattedQuestion)
async def format_question(
    raw: Dict[str, Any] = Body(...),
    artifacts: ArtifactCache = Depends(get_artifacts),
):
    return await artifacts.explainer.format_question(raw)
