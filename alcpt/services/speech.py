"""OpenAI text-to-speech collaborator."""

import logging
from typing import Optional, Protocol

import openai
from openai import AsyncOpenAI

from alcpt.core.config import settings
from alcpt.core.errors import CollaboratorFailure

logger = logging.getLogger(__name__)


class AudioCollaborator(Protocol):
    async def synthesize(self, text: str) -> bytes: ...


class OpenAISpeech:
    """Generates mp3 audio for listening questions."""

    name = "openai-tts"

    def __init__(
        self,
        api_key: Optional[str] = None,
        model: Optional[str] = None,
        voice: Optional[str] = None,
        client: Optional[AsyncOpenAI] = None,
    ):
        if api_key is None and settings.OPENAI_API_KEY is not None:
            api_key = settings.OPENAI_API_KEY.get_secret_value()
        self.model = model or settings.OPENAI_TTS_MODEL
        self.voice = voice or settings.OPENAI_TTS_VOICE
        self.client = client or (AsyncOpenAI(api_key=api_key) if api_key else None)

    async def synthesize(self, text: str) -> bytes:
        """
        Synthesize speech for ``text``.

        Raises:
            CollaboratorFailure: key not configured, API error, or empty audio
        """
        if self.client is None:
            raise CollaboratorFailure(self.name, "OpenAI API key not configured")
        try:
            response = await self.client.audio.speech.create(
                model=self.model,
                voice=self.voice,
                input=text,
                response_format="mp3",
            )
        except openai.OpenAIError as e:
            raise CollaboratorFailure(self.name, str(e)) from e
        audio = response.content
        if not audio:
            raise CollaboratorFailure(self.name, "empty audio response")
        logger.info("Synthesized %d bytes of audio", len(audio))
        return audio
