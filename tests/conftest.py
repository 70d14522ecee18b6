"""
Pytest Configuration and Centralized Fixtures.

Provides reusable fixtures for testing:
- SQLite-backed engines and session factories (one database file per test)
- Credit ledger and task store on top of them
- Scripted generation providers and an orchestrator that never sleeps
- API test client with auth and service overrides
"""

import os
from collections.abc import AsyncGenerator, Callable, Iterator
from pathlib import Path
from unittest.mock import AsyncMock

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

# Set required environment variables BEFORE importing app modules
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///./clipledger-test.db")
os.environ.setdefault("STRIPE_API_KEY", "sk_test_fake_key")
os.environ.setdefault("STRIPE_WEBHOOK_SECRET", "whsec_test_fake_secret")
os.environ.setdefault("STRIPE_PUBLISHABLE_KEY", "pk_test_fake_key")
os.environ.setdefault("AUTH_JWT_KEY", "test-secret-key-for-jwt-signing-min-32-chars")
os.environ.setdefault("AUTH_JWT_ALGORITHM", "HS256")
os.environ.setdefault("KIEAI_API_KEY", "kie-test-key")

from clipledger.api.dependencies import UserIdentity
from clipledger.db.session import init_models
from clipledger.exceptions import ProviderRejectedError, TransientFetchError
from clipledger.models.api import (
    AspectRatio,
    GenerationMode,
    NormalizedState,
    ProviderName,
)
from clipledger.models.domain import GenerationRequest, NormalizedStatus
from clipledger.services.generation_provider import require_supported_mode
from clipledger.services.ledger import CreditLedger
from clipledger.services.orchestrator import GenerationTaskOrchestrator
from clipledger.services.task_store import TaskStore

# ============================================================================
# Database Fixtures
# ============================================================================


def create_sqlite_engine(path: Path) -> AsyncEngine:
    """File-backed SQLite engine; every session gets its own connection."""
    return create_async_engine(
        f"sqlite+aiosqlite:///{path}",
        poolclass=NullPool,
        connect_args={"timeout": 30},
    )


@pytest.fixture
async def engine(tmp_path: Path) -> AsyncGenerator[AsyncEngine, None]:
    """Fresh database with all tables created."""
    db_engine = create_sqlite_engine(tmp_path / "clipledger.db")
    await init_models(db_engine)
    yield db_engine
    await db_engine.dispose()


@pytest.fixture
def session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Session factory matching the application's settings."""
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
def ledger(session_factory: async_sessionmaker[AsyncSession]) -> CreditLedger:
    """Credit ledger on the test database."""
    return CreditLedger(session_factory)


@pytest.fixture
def task_store(session_factory: async_sessionmaker[AsyncSession]) -> TaskStore:
    """Task store on the test database."""
    return TaskStore(session_factory)


async def fund(ledger: CreditLedger, account_id: str, amount: int) -> None:
    """Give an account a starting balance through the normal credit path."""
    await ledger.credit(f"seed:{account_id}:{amount}", account_id, amount, source="seed")


# ============================================================================
# Generation Provider Fixtures
# ============================================================================


class ScriptedProvider:
    """
    Generation provider that replays canned answers.

    statuses is consumed one entry per fetch; an exception instance is raised
    instead of returned. Once exhausted, the last entry repeats.
    """

    def __init__(
        self,
        name: ProviderName = ProviderName.VEO,
        statuses: list[NormalizedStatus | Exception] | None = None,
        reject: ProviderRejectedError | None = None,
        supported_modes: frozenset[GenerationMode] | None = None,
        clip_length: int = 8,
    ) -> None:
        self.name = name
        self.supported_modes = supported_modes or frozenset(GenerationMode)
        self.statuses = list(statuses or [running()])
        self.reject = reject
        self.clip_length = clip_length
        self.submitted: list[GenerationRequest] = []
        self.fetches: list[str] = []

    def clip_seconds(self, request: GenerationRequest) -> int:
        return self.clip_length

    async def submit(self, request: GenerationRequest) -> str:
        require_supported_mode(self, request)
        self.submitted.append(request)
        if self.reject is not None:
            raise self.reject
        return f"{self.name.value}-task-{len(self.submitted)}"

    async def fetch_status(self, provider_task_id: str) -> NormalizedStatus:
        self.fetches.append(provider_task_id)
        index = min(len(self.fetches), len(self.statuses)) - 1
        answer = self.statuses[index]
        if isinstance(answer, Exception):
            raise answer
        return answer


def running() -> NormalizedStatus:
    return NormalizedStatus(state=NormalizedState.RUNNING, provider_state="generating")


def succeeded(url: str | None = "https://cdn.example.com/clip.mp4") -> NormalizedStatus:
    return NormalizedStatus(state=NormalizedState.SUCCEEDED, result_url=url, provider_state="success")


def failed(reason: str = "content policy violation") -> NormalizedStatus:
    return NormalizedStatus(state=NormalizedState.FAILED, failure_reason=reason, provider_state="fail")


def transient() -> TransientFetchError:
    return TransientFetchError("veo", "connection reset")


@pytest.fixture
async def make_orchestrator(
    ledger: CreditLedger, task_store: TaskStore
) -> AsyncGenerator[Callable[..., GenerationTaskOrchestrator], None]:
    """Factory for orchestrators over scripted providers, 10 credits/second, no sleeping."""
    created: list[GenerationTaskOrchestrator] = []

    def _create(
        *providers: ScriptedProvider, max_attempts: int = 5
    ) -> GenerationTaskOrchestrator:
        orchestrator = GenerationTaskOrchestrator(
            ledger=ledger,
            tasks=task_store,
            providers=providers or [ScriptedProvider()],
            credits_per_second={name: 10 for name in ProviderName},
            poll_interval=0.0,
            max_attempts=max_attempts,
            sleep=AsyncMock(),
        )
        created.append(orchestrator)
        return orchestrator

    yield _create

    for orchestrator in created:
        await orchestrator.shutdown()


@pytest.fixture
def text_request() -> GenerationRequest:
    """Text-to-video request for the Veo provider (8s -> 80 credits at 10/s)."""
    return GenerationRequest(
        provider=ProviderName.VEO,
        mode=GenerationMode.TEXT_TO_VIDEO,
        prompt="a lighthouse in a storm, cinematic",
        aspect_ratio=AspectRatio.LANDSCAPE,
    )


@pytest.fixture
def image_request() -> GenerationRequest:
    """Image-to-video request for the Sora provider."""
    return GenerationRequest(
        provider=ProviderName.SORA,
        mode=GenerationMode.IMAGE_TO_VIDEO,
        prompt="the cat starts dancing",
        image_urls=("https://img.example.com/cat.png",),
        aspect_ratio=AspectRatio.PORTRAIT,
        duration_seconds=15,
    )


# ============================================================================
# Auth Fixtures
# ============================================================================


@pytest.fixture
def user_identity() -> UserIdentity:
    """Standard user identity from JWT."""
    return UserIdentity(account_id="user_2abcDEF", email="user@example.com")


# ============================================================================
# FastAPI Test Client Fixtures
# ============================================================================


@pytest.fixture
def app() -> FastAPI:
    """FastAPI app for testing."""
    from clipledger.main import app as main_app

    return main_app


@pytest.fixture
def authenticated_client(app: FastAPI, user_identity: UserIdentity) -> Iterator[TestClient]:
    """
    Test client with auth overridden.

    Not entered as a context manager, so the lifespan (and its real
    database and providers) never runs; tests override the services they use.
    """
    from clipledger.api.dependencies import get_current_user

    async def override_auth() -> UserIdentity:
        return user_identity

    app.dependency_overrides[get_current_user] = override_auth

    client = TestClient(app)
    yield client

    app.dependency_overrides.clear()
