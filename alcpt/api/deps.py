"""Accessors for the long-lived services the lifespan puts on ``app.state``."""
from fastapi import Request
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from alcpt.jobs.queue import BackgroundProcessor
from alcpt.services.artifacts import ArtifactCache
from alcpt.services.batch_optimizer import BatchOptimizer


def get_artifacts(request: Request) -> ArtifactCache:
    return request.app.state.artifacts


def get_processor(request: Request) -> BackgroundProcessor:
    return request.app.state.processor


def get_optimizer(request: Request) -> BatchOptimizer:
    return request.app.state.optimizer


def get_session_factory(request: Request) -> async_sessionmaker[AsyncSession]:
    return request.app.state.session_factory
