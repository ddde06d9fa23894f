"""
Artifact cache: audio files and Arabic explanations stored on questions.

An artifact is keyed by (question id, artifact kind). ``ensure_audio`` and
``ensure_explanation`` are the only places that call the collaborators; the
request handlers, the job queue and the batch optimizer all go through them.
Each fill holds the key's lock, refreshes the question from the database and
only generates when the artifact is still missing.
"""
import asyncio
import logging
from pathlib import Path
from typing import Any, Dict, Optional

from prometheus_client import Counter
from sqlalchemy.ext.asyncio import AsyncSession

from alcpt.core.cache import ArtifactLocks
from alcpt.core.config import settings
from alcpt.core.errors import ValidationError
from alcpt.models.orm import Question
from alcpt.services import store
from alcpt.services.explanations import ExplanationCollaborator, GeminiExplainer, validate_explanation
from alcpt.services.speech import AudioCollaborator, OpenAISpeech

logger = logging.getLogger(__name__)

AUDIO = "audio"
EXPLANATION = "explanation"

ARTIFACTS_GENERATED = Counter("alcpt_artifacts_generated_total", "Artifacts generated by collaborators", ["kind"])


class ArtifactCache:
    def __init__(
        self,
        speech: AudioCollaborator,
        explainer: ExplanationCollaborator,
        locks: Optional[ArtifactLocks] = None,
        storage_dir: Optional[str | Path] = None,
        url_prefix: Optional[str] = None,
    ):
        self.speech = speech
        self.explainer = explainer
        self.locks = locks or ArtifactLocks()
        self.storage_dir = Path(storage_dir or settings.AUDIO_STORAGE_DIR)
        self.url_prefix = (url_prefix or settings.AUDIO_URL_PREFIX).rstrip("/")
        self.storage_dir.mkdir(parents=True, exist_ok=True)

    # ------------------------------------------------------------ audio

    @staticmethod
    def audio_filename(question_id: int) -> str:
        return f"question_{question_id}.mp3"

    def audio_path_for(self, question_id: int) -> Path:
        return self.storage_dir / self.audio_filename(question_id)

    def audio_url_for(self, question_id: int) -> str:
        return f"{self.url_prefix}/{self.audio_filename(question_id)}"

    def has_audio(self, question: Question) -> bool:
        if not question.audio_url:
            return False
        return (self.storage_dir / Path(question.audio_url).name).exists()

    async def ensure_audio(self, db: AsyncSession, question: Question) -> str:
        """
        Return the question's audio URL, synthesizing it on first request.

        Raises:
            ValidationError: the question is a reading question
            CollaboratorFailure: synthesis failed
        """
        if not question.is_listening:
            raise ValidationError(
                "Audio not available for reading/grammar questions",
                detail={"question_id": question.id, "is_listening_question": False},
            )
        async with self.locks.hold(question.id, AUDIO):
            await db.refresh(question)
            if self.has_audio(question):
                return question.audio_url
            if question.audio_url:
                logger.warning("Audio file missing for question %s, regenerating", question.id)

            audio = await self.speech.synthesize(question.question_text)
            path = self.audio_path_for(question.id)
            await asyncio.to_thread(path.write_bytes, audio)
            url = self.audio_url_for(question.id)
            await store.update_question_audio(db, question, url)
            ARTIFACTS_GENERATED.labels(kind=AUDIO).inc()
            logger.info("Audio generated and saved for question %s", question.id)
            return url

    # ------------------------------------------------------------ explanation

    async def ensure_explanation(self, db: AsyncSession, question: Question) -> Dict[str, Any]:
        """
        Return the question's explanation, generating it on first request.

        Raises:
            CollaboratorFailure: generation failed or produced an invalid object
        """
        async with self.locks.hold(question.id, EXPLANATION):
            await db.refresh(question)
            if question.arabic_explanation:
                return question.arabic_explanation

            explanation = validate_explanation(await self.explainer.explain(question))
            await store.update_question_explanation(db, question, explanation)
            ARTIFACTS_GENERATED.labels(kind=EXPLANATION).inc()
            logger.info("Arabic explanation generated for question %s", question.id)
            return explanation


def build_artifact_cache(locks: Optional[ArtifactLocks] = None) -> ArtifactCache:
    """Artifact cache wired to the configured OpenAI and Gemini collaborators."""
    return ArtifactCache(OpenAISpeech(), GeminiExplainer(), locks=locks)
