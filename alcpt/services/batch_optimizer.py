"""
Rate-limited bulk generation of artifacts.

Questions are processed in fixed-size batches with a pause between batches;
inside a batch at most ``max_concurrency`` collaborator calls are in flight.
Each batch settles completely before the pause starts.
"""
import asyncio
import logging
from dataclasses import asdict, dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, TypeVar

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from tenacity import AsyncRetrying, before_sleep_log, stop_after_attempt, wait_exponential

from alcpt.core.config import settings
from alcpt.core.errors import NotFound
from alcpt.models.orm import Question
from alcpt.models.schemas import CamelModel
from alcpt.services import store
from alcpt.services.artifacts import ArtifactCache

logger = logging.getLogger(__name__)

T = TypeVar("T")
Sleep = Callable[[float], Awaitable[None]]


@dataclass
class BatchResult:
    processed: int = 0
    failed: int = 0
    skipped: int = 0
    errors: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class CostSavings(CamelModel):
    without_caching: float
    with_caching: float
    percentage_saved: int


class CostEstimate(CamelModel):
    explanations_needed: int
    audio_generations_needed: int
    estimated_explanation_cost: float
    estimated_audio_cost: float
    total_estimated_cost: float
    savings: CostSavings


async def retry_with_backoff(
    operation: Callable[[], Awaitable[T]],
    max_retries: int = 3,
    base_delay: float = 1.0,
    sleep: Sleep = asyncio.sleep,
) -> T:
    """
    Run ``operation`` up to ``max_retries`` times.

    The wait before attempt n+1 is ``base_delay * 2 ** (n - 1)`` seconds. The
    last error is re-raised once all attempts are used.
    """
    retrying = AsyncRetrying(
        stop=stop_after_attempt(max(1, max_retries)),
        wait=wait_exponential(multiplier=base_delay, min=0),
        reraise=True,
        sleep=sleep,
        before_sleep=before_sleep_log(logger, logging.INFO),
    )
    async for attempt in retrying:
        with attempt:
            return await operation()
    raise RuntimeError("unreachable")  # pragma: no cover


def estimate_costs(
    questions: Sequence[Question],
    cost_per_explanation: Optional[float] = None,
    cost_per_audio: Optional[float] = None,
) -> CostEstimate:
    """Price the artifacts still missing versus regenerating everything."""
    per_explanation = settings.COST_PER_EXPLANATION if cost_per_explanation is None else cost_per_explanation
    per_audio = settings.COST_PER_AUDIO if cost_per_audio is None else cost_per_audio

    listening = [q for q in questions if q.is_listening]
    explanations_needed = sum(1 for q in questions if not q.arabic_explanation)
    audio_needed = sum(1 for q in listening if not q.audio_url)

    explanation_cost = explanations_needed * per_explanation
    audio_cost = audio_needed * per_audio
    total = explanation_cost + audio_cost
    without_caching = len(questions) * per_explanation + len(listening) * per_audio
    saved = int((1 - total / without_caching) * 100 + 0.5) if without_caching else 0

    return CostEstimate(
        explanations_needed=explanations_needed,
        audio_generations_needed=audio_needed,
        estimated_explanation_cost=round(explanation_cost, 6),
        estimated_audio_cost=round(audio_cost, 6),
        total_estimated_cost=round(total, 6),
        savings=CostSavings(
            without_caching=round(without_caching, 6),
            with_caching=round(total, 6),
            percentage_saved=saved,
        ),
    )


class BatchOptimizer:
    def __init__(
        self,
        artifacts: ArtifactCache,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        batch_size: Optional[int] = None,
        audio_batch_size: Optional[int] = None,
        max_concurrency: Optional[int] = None,
        explanation_delay: Optional[float] = None,
        audio_delay: Optional[float] = None,
        item_attempts: Optional[int] = None,
        retry_base_delay: Optional[float] = None,
        sleep: Sleep = asyncio.sleep,
    ):
        self.artifacts = artifacts
        self.session_factory = session_factory
        self.batch_size = settings.BATCH_EXPLANATION_SIZE if batch_size is None else batch_size
        self.audio_batch_size = settings.BATCH_AUDIO_SIZE if audio_batch_size is None else audio_batch_size
        self.max_concurrency = settings.BATCH_MAX_CONCURRENCY if max_concurrency is None else max_concurrency
        self.explanation_delay = settings.BATCH_EXPLANATION_DELAY if explanation_delay is None else explanation_delay
        self.audio_delay = settings.BATCH_AUDIO_DELAY if audio_delay is None else audio_delay
        self.item_attempts = settings.BATCH_ITEM_ATTEMPTS if item_attempts is None else item_attempts
        self.retry_base_delay = settings.BATCH_RETRY_BASE_DELAY if retry_base_delay is None else retry_base_delay
        self._sleep = sleep
        if min(self.batch_size, self.audio_batch_size, self.max_concurrency, self.item_attempts) < 1:
            raise ValueError("Batch sizes, concurrency and item attempts must be at least 1")

    async def retry_with_backoff(self, operation: Callable[[], Awaitable[T]], max_retries: int = 3,
                                 base_delay: float = 1.0) -> T:
        return await retry_with_backoff(operation, max_retries, base_delay, sleep=self._sleep)

    def estimate_costs(self, questions: Sequence[Question]) -> CostEstimate:
        return estimate_costs(questions)

    # ------------------------------------------------------------ public batches

    async def batch_generate_explanations(self, questions: Sequence[Question]) -> BatchResult:
        result = BatchResult()
        needing = [q.id for q in questions if not q.arabic_explanation]
        result.skipped = len(questions) - len(needing)
        if not needing:
            return result

        logger.info("Starting batch explanation generation for %d questions", len(needing))
        await self._run_batches(needing, self.batch_size, self.explanation_delay, self._explain_one, result, "Batch")
        logger.info(
            "Batch explanation generation complete: %d processed, %d failed", result.processed, result.failed
        )
        return result

    async def batch_generate_audio(self, questions: Sequence[Question]) -> BatchResult:
        result = BatchResult()
        needing = [q.id for q in questions if q.is_listening and not q.audio_url]
        result.skipped = len(questions) - len(needing)
        if not needing:
            return result

        logger.info("Starting batch audio generation for %d listening questions", len(needing))
        await self._run_batches(needing, self.audio_batch_size, self.audio_delay, self._audio_one, result, "Audio batch")
        logger.info("Batch audio generation complete: %d processed, %d failed", result.processed, result.failed)
        return result

    async def run_for_test(self, test_id: int, audio: bool = True) -> Dict[str, Any]:
        """Pre-warm every missing artifact of one test."""
        async with self.session_factory() as db:
            await store.require_test(db, test_id)
            questions = await store.get_questions_by_test(db, test_id)
        summary = {"explanations": (await self.batch_generate_explanations(questions)).to_dict()}
        if audio:
            summary["audio"] = (await self.batch_generate_audio(questions)).to_dict()
        return summary

    # ------------------------------------------------------------ internals

    async def _run_batches(
        self,
        question_ids: List[int],
        size: int,
        delay: float,
        worker: Callable[[int], Awaitable[Any]],
        result: BatchResult,
        label: str,
    ) -> None:
        for start in range(0, len(question_ids), size):
            batch = question_ids[start:start + size]
            await self._process_with_concurrency(batch, worker, result, f"{label} {start // size + 1}")
            if start + size < len(question_ids):
                await self._sleep(delay)

    async def _process_with_concurrency(
        self,
        items: List[int],
        worker: Callable[[int], Awaitable[Any]],
        result: BatchResult,
        label: str,
    ) -> None:
        for i in range(0, len(items), self.max_concurrency):
            group = items[i:i + self.max_concurrency]
            outcomes = await asyncio.gather(*(worker(item) for item in group), return_exceptions=True)
            if not any(isinstance(o, BaseException) for o in outcomes):
                result.processed += len(group)
                continue

            # Isolate the failing items by replaying the group one at a time
            logger.warning("%s: concurrent group failed, retrying items sequentially", label)
            for item in group:
                try:
                    await worker(item)
                    result.processed += 1
                except Exception as e:
                    logger.error("%s: question %s failed: %s", label, item, e)
                    result.failed += 1
                    result.errors.append(f"{label}: question {item}: {e}")

    async def _load(self, db: AsyncSession, question_id: int) -> Question:
        question = await db.get(Question, question_id)
        if question is None:
            raise NotFound("Question not found", detail={"question_id": question_id})
        return question

    async def _explain_one(self, question_id: int) -> Dict[str, Any]:
        async with self.session_factory() as db:
            question = await self._load(db, question_id)
            return await self.retry_with_backoff(
                lambda: self.artifacts.ensure_explanation(db, question),
                max_retries=self.item_attempts,
                base_delay=self.retry_base_delay,
            )

    async def _audio_one(self, question_id: int) -> str:
        async with self.session_factory() as db:
            question = await self._load(db, question_id)
            return await self.retry_with_backoff(
                lambda: self.artifacts.ensure_audio(db, question),
                max_retries=self.item_attempts,
                base_delay=self.retry_base_delay,
            )
