"""Pre-generate missing explanations (and optionally audio) for one test.

Usage:
    python -m alcpt.jobs.prewarm TEST_ID [--audio] [--estimate-only]

Runs the batch optimizer outside the web process and prints a JSON summary.
Requires DATABASE_URL and the collaborator API keys in the environment.
"""
import argparse
import asyncio
import json
import logging
import sys
from typing import List, Optional

from alcpt.core.cache import build_locks
from alcpt.core.database import AsyncSessionLocal, close_db, init_db
from alcpt.core.errors import AppError
from alcpt.core.logging_config import configure_logging
from alcpt.services import store
from alcpt.services.artifacts import build_artifact_cache
from alcpt.services.batch_optimizer import BatchOptimizer, estimate_costs

logger = logging.getLogger(__name__)


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    ap = argparse.ArgumentParser(description="Pre-generate explanations and audio for a test")
    ap.add_argument("test_id", type=int)
    ap.add_argument("--audio", action="store_true", help="also generate audio for listening questions")
    ap.add_argument("--estimate-only", action="store_true", help="print the cost estimate and exit")
    return ap.parse_args(argv)


async def run(args: argparse.Namespace) -> dict:
    await init_db()
    locks = build_locks()
    try:
        async with AsyncSessionLocal() as db:
            test = await store.require_test(db, args.test_id)
            questions = await store.get_questions_by_test(db, test.id)
        estimate = estimate_costs(questions).model_dump(by_alias=True)
        if args.estimate_only:
            return {"testId": test.id, "estimate": estimate}

        optimizer = BatchOptimizer(build_artifact_cache(locks), AsyncSessionLocal)
        summary = await optimizer.run_for_test(test.id, audio=args.audio)
        return {"testId": test.id, "estimate": estimate, **summary}
    finally:
        await locks.close()
        await close_db()


def main(argv: Optional[List[str]] = None) -> int:
    configure_logging()
    args = parse_args(argv)
    try:
        result = asyncio.run(run(args))
    except AppError as e:
        logger.error("Pre-warm failed: %s", e.message)
        return 1
    print(json.dumps(result, ensure_ascii=False, indent=2))
    return 0


if __name__ == "__main__":
    sys.exit(main())
