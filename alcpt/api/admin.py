import logging
from datetime import datetime
from typing import List, Literal

from fastapi import APIRouter, BackgroundTasks, Depends
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from alcpt.api.deps import get_optimizer, get_processor
from alcpt.core.auth import require_roles
from alcpt.core.database import get_db
from alcpt.jobs.queue import BackgroundProcessor, JobPriority
from alcpt.models.schemas import CamelModel
from alcpt.services import store
from alcpt.services.batch_optimizer import BatchOptimizer, CostEstimate

logger = logging.getLogger(__name__)

router = APIRouter()


class PrewarmRequest(BaseModel):
    priority: Literal["low", "medium", "high"] = "low"


class JobAccepted(CamelModel):
    job_id: str
    kind: str
    priority: str


class BatchAccepted(CamelModel):
    test_id: int
    question_count: int
    status: str = "started"


class DeadJobOut(CamelModel):
    job_id: str
    kind: str
    question_id: int | None = None
    test_id: int | None = None
    retries: int
    error: str
    failed_at: datetime


async def _run_batch(optimizer: BatchOptimizer, test_id: int) -> None:
    # Runs after the response is sent, so failures can only be logged
    try:
        summary = await optimizer.run_for_test(test_id, audio=True)
        logger.info("Batch generation for test %s finished: %s", test_id, summary)
    except Exception:
        logger.error("Batch generation for test %s failed", test_id, exc_info=True)


@router.get("/jobs/stats", dependencies=[Depends(require_roles("admin"))])
async def job_stats(processor: BackgroundProcessor = Depends(get_processor)):
    stats = await processor.get_stats()
    return {
        "pending": stats.pending,
        "byKind": stats.by_kind,
        "byPriority": stats.by_priority,
        "draining": stats.draining,
        "running": stats.running,
        "processed": stats.processed,
        "failedAttempts": stats.failed_attempts,
        "dead": stats.dead,
    }


@router.get("/jobs/dead", response_model=List[DeadJobOut], dependencies=[Depends(require_roles("admin"))])
async def dead_jobs(processor: BackgroundProcessor = Depends(get_processor)):
    return [DeadJobOut(**vars(dead)) for dead in await processor.dead_letters()]


@router.post("/tests/{test_id}/prewarm", response_model=JobAccepted, status_code=202,
             dependencies=[Depends(require_roles("admin"))])
async def prewarm_test(
    test_id: int,
    payload: PrewarmRequest = PrewarmRequest(),
    db: AsyncSession = Depends(get_db),
    processor: BackgroundProcessor = Depends(get_processor),
):
    await store.require_test(db, test_id)
    priority = JobPriority.from_label(payload.priority)
    job = processor.enqueue_batch(test_id, priority=priority)
    return JobAccepted(job_id=job.id, kind=job.kind.value, priority=priority.label)


@router.post("/tests/{test_id}/batch", response_model=BatchAccepted, status_code=202,
             dependencies=[Depends(require_roles("admin"))])
async def batch_generate(
    test_id: int,
    background_tasks: BackgroundTasks,
    db: AsyncSession = Depends(get_db),
    optimizer: BatchOptimizer = Depends(get_optimizer),
):
    await store.require_test(db, test_id)
    count = await store.count_questions(db, test_id)
    background_tasks.add_task(_run_batch, optimizer, test_id)
    return BatchAccepted(test_id=test_id, question_count=count)


@router.get("/tests/{test_id}/cost-estimate", response_model=CostEstimate,
            dependencies=[Depends(require_roles("admin"))])
async def cost_estimate(
    test_id: int,
    db: AsyncSession = Depends(get_db),
    optimizer: BatchOptimizer = Depends(get_optimizer),
):
    await store.require_test(db, test_id)
    return optimizer.estimate_costs(await store.get_questions_by_test(db, test_id))
