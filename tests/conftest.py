"""
Pytest configuration and shared fixtures for testing.
"""
import asyncio
import os
import tempfile
from pathlib import Path

# Settings are read at import time, so the environment must be in place first
_TMP = Path(tempfile.mkdtemp(prefix="alcpt-tests-"))
os.environ["ENVIRONMENT"] = "testing"
os.environ["DATABASE_URL"] = f"sqlite+aiosqlite:///{_TMP / 'app.db'}"
os.environ["AUDIO_STORAGE_DIR"] = str(_TMP / "audio")
os.environ["DATA_DIR"] = str(_TMP / "data")
os.environ["PROMETHEUS_ENABLED"] = "false"
os.environ.pop("REDIS_URL", None)

from contextlib import asynccontextmanager  # noqa: E402
from typing import Any, AsyncGenerator, Dict, Iterable, List  # noqa: E402

import pytest  # noqa: E402
import pytest_asyncio  # noqa: E402
from httpx import ASGITransport, AsyncClient  # noqa: E402
from redis.exceptions import ConnectionError as RedisConnectionError, LockNotOwnedError  # noqa: E402
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine  # noqa: E402

from alcpt.core.auth import create_token  # noqa: E402
from alcpt.core.database import get_db  # noqa: E402
from alcpt.core.errors import CollaboratorFailure  # noqa: E402
from alcpt.jobs.queue import BackgroundProcessor  # noqa: E402
from alcpt.main import app, attach_services  # noqa: E402
from alcpt.models.orm import Base, Question, Test  # noqa: E402
from alcpt.services.artifacts import ArtifactCache  # noqa: E402
from alcpt.services.batch_optimizer import BatchOptimizer  # noqa: E402
from alcpt.services.explanations import FormattedQuestion  # noqa: E402


@asynccontextmanager
async def _test_lifespan(app):
    """No-op lifespan; fixtures wire the services onto app.state instead."""
    yield


app.router.lifespan_context = _test_lifespan


def sample_explanation(answer: str = "bread", wrong: Iterable[str] = ("oranges", "eggs", "milk")) -> Dict[str, Any]:
    first, second, third = [{"الخيار": w, "سبب_الخطأ": "لا يتعلق بالسؤال"} for w in wrong]
    return {
        "الإجابة_الصحيحة": answer,
        "التحليل_اللغوي": {
            "الكلمات_المفتاحية": [{"الكلمة_في_السؤال": "toast", "الكلمة_في_الإجابة": answer, "العلاقة": "يصنع من"}],
            "التركيب_النحوي": "جملة خبرية بسيطة",
        },
        "شرح_الإجابة_الصحيحة": {
            "السبب_الرئيسي": "الخبز المحمص يصنع من الخبز",
            "الدليل_من_السؤال": "made toast",
            "المعنى_الكامل": "صنعت المرأة خبزا محمصا",
        },
        "تحليل_الخيارات_الخاطئة": {"الخيار_الأول": first, "الخيار_الثاني": second, "الخيار_الثالث": third},
        "القاعدة_اللغوية": "الفعل الماضي البسيط",
        "نصيحة_للطالب": "ابحث عن الكلمات المفتاحية",
    }


class FakeSpeech:
    name = "fake-tts"

    def __init__(self):
        self.calls: List[str] = []
        self.fail = False
        self.fail_texts: set = set()

    async def synthesize(self, text: str) -> bytes:
        self.calls.append(text)
        if self.fail or text in self.fail_texts:
            raise CollaboratorFailure(self.name, "synthesis unavailable")
        return b"ID3" + text.encode()


class FakeExplainer:
    name = "fake-gemini"

    def __init__(self):
        self.calls: List[int] = []
        self.fail = False
        self.fail_ids: set = set()
        # Seconds each call stays in flight
        self.delay = 0.0
        self.in_flight = 0
        self.peak = 0
        # Calls grouped by overlap: a new wave starts whenever nothing is in flight
        self.waves: List[List[int]] = []

    async def explain(self, question: Question) -> Dict[str, Any]:
        self.calls.append(question.id)
        if self.in_flight == 0:
            self.waves.append([])
        self.waves[-1].append(question.id)
        self.in_flight += 1
        self.peak = max(self.peak, self.in_flight)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
            if self.fail or question.id in self.fail_ids:
                raise CollaboratorFailure(self.name, "quota exceeded")
            return sample_explanation(question.correct_answer, question.other_options)
        finally:
            self.in_flight -= 1

    async def format_question(self, raw: Dict[str, Any]) -> FormattedQuestion:
        return FormattedQuestion(
            question_text=raw["question"].strip(),
            correct_answer=raw["answer"].split(". ", 1)[-1],
            other_options=[o.split(". ", 1)[-1] for o in raw["options"]],
        )


class FakeRedisLock:
    def __init__(self, owner: "FakeRedis", name: str):
        self.owner = owner
        self.name = name

    async def acquire(self) -> bool:
        if self.owner.down:
            raise RedisConnectionError("Connection refused")
        if self.owner.busy:
            return False
        self.owner.acquired.append(self.name)
        return True

    async def release(self) -> None:
        if self.owner.expire:
            raise LockNotOwnedError("Cannot release a lock that's no longer owned")
        self.owner.released.append(self.name)


class FakeRedis:
    """Just enough of ``redis.asyncio.Redis`` for ``ArtifactLocks``."""

    def __init__(self, busy: bool = False, down: bool = False, expire: bool = False):
        self.busy = busy
        self.down = down
        self.expire = expire
        self.acquired: List[str] = []
        self.released: List[str] = []

    def lock(self, name: str, timeout=None, blocking_timeout=None) -> FakeRedisLock:
        return FakeRedisLock(self, name)

    async def aclose(self) -> None:
        return None


async def no_sleep(_: float) -> None:
    return None


@pytest_asyncio.fixture
async def session_factory(tmp_path) -> AsyncGenerator[async_sessionmaker[AsyncSession], None]:
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False, autoflush=False)
    await engine.dispose()


@pytest_asyncio.fixture
async def db(session_factory) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as session:
        yield session


@pytest.fixture
def speech() -> FakeSpeech:
    return FakeSpeech()


@pytest.fixture
def explainer() -> FakeExplainer:
    return FakeExplainer()


@pytest.fixture
def artifacts(tmp_path, speech, explainer) -> ArtifactCache:
    return ArtifactCache(speech, explainer, storage_dir=tmp_path / "audio", url_prefix="/audio")


@pytest_asyncio.fixture
async def exam(db) -> Dict[str, Any]:
    """Test 065 with two listening questions and one reading question."""
    test = Test(test_number="065", name="ALCPT Form 065", total_questions=3, duration_minutes=75)
    db.add(test)
    await db.flush()
    questions = [
        Question(test_id=test.id, question_index=1, question_text="The woman made toast. What did she use?",
                 correct_answer="bread", other_options=["oranges", "eggs", "milk"]),
        Question(test_id=test.id, question_index=2, question_text="He parked the car. Where is it?",
                 correct_answer="in the garage", other_options=["on the roof", "in the kitchen", "at sea"]),
        Question(test_id=test.id, question_index=67, question_text="She ___ to school every day.",
                 correct_answer="walks", other_options=["walk", "walking", "to walk"]),
    ]
    db.add_all(questions)
    await db.commit()
    return {
        "test_id": test.id,
        "listening": [questions[0].id, questions[1].id],
        "reading": questions[2].id,
    }


@pytest.fixture
def processor() -> BackgroundProcessor:
    # Not started: API tests inspect what got queued
    return BackgroundProcessor(tick_interval=3600, retry_base_delay=0)


@pytest_asyncio.fixture
async def client(session_factory, artifacts, processor) -> AsyncGenerator[AsyncClient, None]:
    async def override_get_db():
        async with session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    optimizer = BatchOptimizer(artifacts, session_factory, sleep=no_sleep)
    attach_services(app, artifacts, session_factory, processor=processor, optimizer=optimizer)
    app.dependency_overrides[get_db] = override_get_db
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac
    app.dependency_overrides.clear()
    await processor.stop()


def auth_headers(user_id: str = "student-1", roles: Iterable[str] = ("student",), **claims) -> Dict[str, str]:
    token = create_token(user_id, list(roles), **claims)
    return {"Authorization": f"Bearer {token}"}
