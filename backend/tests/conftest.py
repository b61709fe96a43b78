"""
Pytest configuration and fixtures for SIFT Stream tests.

Provides common fixtures for testing:
- Fake AI providers
- In-memory database
- A gateway wired to both, and an API client using it
"""

import asyncio
import os
import sys
from typing import AsyncGenerator, Dict, List, Optional, Sequence

# Settings are read at import time
os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("ANTHROPIC_API_KEY", "test-anthropic-key")
os.environ.setdefault("OPENAI_API_KEY", "test-openai-key")
os.environ["OPENROUTER_API_KEY"] = ""
os.environ.setdefault("PERSISTENCE_ENABLED", "false")
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")

# Add backend to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from siftstream.api.analysis import get_gateway
from siftstream.core.enums import ProviderType
from siftstream.main import app
from siftstream.models.database import Base
from siftstream.services.analysis_gateway import AnalysisGateway
from siftstream.services.circuit_breaker import provider_circuit_breakers
from siftstream.services.model_catalog import ModelCatalog
from siftstream.services.persistence_service import PersistenceService
from siftstream.services.providers import PromptMessage, ProviderRegistry, TextProvider
from siftstream.services.stream_relay import StreamRelay


# ============ Fake Providers ============


class FakeProvider(TextProvider):
    """Provider that yields canned chunks, optionally failing or stalling."""

    def __init__(
        self,
        provider_type: ProviderType = ProviderType.ANTHROPIC,
        chunks: Sequence[str] = ("## Claim summary\n", "The claim is ", "unsupported."),
        error: Optional[Exception] = None,
        delay: float = 0,
    ):
        self.provider_type = provider_type
        self.chunks = list(chunks)
        self.error = error
        self.delay = delay
        self.calls: List[Dict] = []
        self.closed = False

    async def stream_text(self, model_id: str, system_prompt: str, messages: List[PromptMessage], params: Dict):
        self.calls.append(
            {"model_id": model_id, "system_prompt": system_prompt, "messages": messages, "params": params}
        )
        try:
            for chunk in self.chunks:
                if self.delay:
                    await asyncio.sleep(self.delay)
                yield chunk
            if self.error is not None:
                raise self.error
        finally:
            self.closed = True


# ============ Database Fixtures ============


TEST_DATABASE_URL = "sqlite+aiosqlite://"


@pytest.fixture
async def session_factory() -> AsyncGenerator[async_sessionmaker, None]:
    """In-memory database shared by every session of one test."""
    engine = create_async_engine(
        TEST_DATABASE_URL,
        echo=False,
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


@pytest.fixture
def persistence(session_factory) -> PersistenceService:
    return PersistenceService(session_factory=session_factory, enabled=True)


# ============ Service Fixtures ============


@pytest.fixture
def anthropic_provider() -> FakeProvider:
    return FakeProvider(ProviderType.ANTHROPIC)


@pytest.fixture
def openai_provider() -> FakeProvider:
    return FakeProvider(ProviderType.OPENAI, chunks=("Follow-up ", "answer."))


@pytest.fixture
def registry(anthropic_provider, openai_provider) -> ProviderRegistry:
    """Registry holding only fake providers; openrouter stays unconfigured."""
    registry = ProviderRegistry()
    registry.register(anthropic_provider)
    registry.register(openai_provider)
    return registry


@pytest.fixture
def relay() -> StreamRelay:
    return StreamRelay(idle_timeout=2.0, poll_interval=0)


@pytest.fixture
def gateway(registry, relay, persistence) -> AnalysisGateway:
    return AnalysisGateway(
        catalog=ModelCatalog(registry=registry),
        providers=registry,
        relay=relay,
        persistence=persistence,
        handle_ttl_seconds=60,
    )


@pytest.fixture
def make_provider():
    """Build a FakeProvider with custom chunks or failure."""
    return FakeProvider


# ============ Client Fixtures ============


@pytest.fixture
async def client(gateway) -> AsyncGenerator[AsyncClient, None]:
    """Create a test client whose routes use the test gateway."""
    app.dependency_overrides[get_gateway] = lambda: gateway

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()


# ============ Sample Data Fixtures ============


@pytest.fixture
def sample_analysis_request() -> Dict:
    """Sample initiate request body."""
    return {
        "user_input_text": "Photo shows flooding in the city centre yesterday",
        "report_type": "Full Check",
        "selected_model_id": "claude-sonnet-4-5-20250929",
        "model_config_params": {"temperature": 0.5},
    }


@pytest.fixture
def sample_chat_request() -> Dict:
    """Sample follow-up request body."""
    return {
        "new_user_message_text": "Which outlets covered it?",
        "chat_history": [
            {"role": "user", "content": "Photo shows flooding"},
            {"role": "assistant", "content": "The claim is unsupported."},
        ],
        "selected_model_id": "gpt-4o",
        "model_config_params": {},
    }


# ============ Environment Fixtures ============


@pytest.fixture(autouse=True)
def reset_circuit_breakers():
    """Provider breakers are process-wide; start each test closed."""
    provider_circuit_breakers.reset_all()
    yield
    provider_circuit_breakers.reset_all()


# ============ Helper Functions ============


def parse_sse(body: str) -> List[Dict]:
    """Split an SSE body into ``{"event", "data"}`` dicts."""
    import json

    events = []
    for block in body.split("\n\n"):
        if not block.strip():
            continue
        event = {"event": None, "data": None}
        for line in block.splitlines():
            name, _, value = line.partition(": ")
            if name == "event":
                event["event"] = value
            elif name == "data":
                event["data"] = json.loads(value)
        events.append(event)
    return events


@pytest.fixture
def sse():
    return parse_sse
