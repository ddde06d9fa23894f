import logging
from typing import Callable, Dict

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from alcpt.jobs.queue import BackgroundJob, Handler, JobKind, JobPriority
from alcpt.services import store
from alcpt.services.artifacts import ArtifactCache

logger = logging.getLogger(__name__)

Submit = Callable[..., BackgroundJob]


class JobHandlers:
    """
    Work done for each job kind.

    Handlers skip work that is already done, so duplicate jobs are harmless.
    A question or test that no longer exists is logged and the job counts as
    done. Any other error propagates to the processor, which retries.
    """

    def __init__(self, artifacts: ArtifactCache, session_factory: async_sessionmaker[AsyncSession], submit: Submit):
        self.artifacts = artifacts
        self.session_factory = session_factory
        self.submit = submit

    def table(self) -> Dict[JobKind, Handler]:
        return {
            JobKind.AUDIO_GENERATION: self.generate_audio,
            JobKind.ARABIC_EXPLANATION: self.generate_explanation,
            JobKind.BATCH_PROCESS: self.process_test,
        }

    async def generate_audio(self, job: BackgroundJob) -> None:
        async with self.session_factory() as db:
            question = await store.get_question(db, job.question_id)
            if question is None:
                logger.warning("Question %s no longer exists, skipping audio job", job.question_id)
                return
            if not question.is_listening:
                logger.info("Question %s is a reading question, no audio needed", question.id)
                return
            if self.artifacts.has_audio(question):
                return
            await self.artifacts.ensure_audio(db, question)

    async def generate_explanation(self, job: BackgroundJob) -> None:
        async with self.session_factory() as db:
            question = await store.get_question(db, job.question_id)
            if question is None:
                logger.warning("Question %s no longer exists, skipping explanation job", job.question_id)
                return
            if question.arabic_explanation:
                return
            await self.artifacts.ensure_explanation(db, question)

    async def process_test(self, job: BackgroundJob) -> None:
        async with self.session_factory() as db:
            test = await store.get_test(db, job.test_id)
            if test is None:
                logger.warning("Test %s no longer exists, skipping batch job", job.test_id)
                return
            questions = await store.get_questions_by_test(db, test.id)

        audio = explanations = 0
        for question in questions:
            if question.is_listening and not self.artifacts.has_audio(question):
                self.submit(JobKind.AUDIO_GENERATION, question_id=question.id, priority=JobPriority.LOW)
                audio += 1
            if not question.arabic_explanation:
                self.submit(JobKind.ARABIC_EXPLANATION, question_id=question.id, priority=JobPriority.LOW)
                explanations += 1
        logger.info(
            "Batch for test %s queued %d audio and %d explanation jobs", job.test_id, audio, explanations
        )
