import asyncio
from datetime import datetime, timezone
import uuid
from unittest.mock import patch

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from database import Base, get_db
from main import app
from models.user import User
from routers import rate_limit
from services.ai_provider import AiProvider, EnhancedImage, get_ai_provider
from services.blob_storage import LocalBlobStorage, get_blob_storage
from services.passwords import hash_password
from services.payments import ManualPaymentProcessor, get_payment_processor
from services.session_token import create_session_token


PNG_BYTES = b"\x89PNG\r\n\x1a\n" + b"original-image-payload"
TEST_PASSWORD = "correct-horse-battery"


class ScriptedProvider(AiProvider):
    """Provider double returning a fixed result, error or delay."""

    name = "scripted"
    model = "scripted-model"

    def __init__(self, result=None, error=None, delay=0.0):
        self.result = result if result is not None else EnhancedImage(b"enhanced-image-bytes", "image/png")
        self.error = error
        self.delay = delay
        self.calls = []

    async def enhance(self, image_bytes, mime_type, operation_type, parameters, reference_image=None):
        self.calls.append(
            {
                "image_bytes": image_bytes,
                "mime_type": mime_type,
                "operation_type": operation_type,
                "parameters": parameters,
                "reference_image": reference_image,
            }
        )
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return self.result


@pytest.fixture(autouse=True)
def reset_local_rate_limit_counters():
    """Keep in-memory rate-limit state isolated between tests."""
    previous = getattr(app.state, "disable_rate_limits", False)
    app.state.disable_rate_limits = True
    rate_limit._local_windows.clear()
    yield
    rate_limit._local_windows.clear()
    app.state.disable_rate_limits = previous


@pytest_asyncio.fixture
async def session_maker(tmp_path):
    db_path = tmp_path / "photox.db"
    engine = create_async_engine(f"sqlite+aiosqlite:///{db_path}")
    maker = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield maker
    await engine.dispose()


@pytest.fixture
def blob_storage(tmp_path):
    return LocalBlobStorage(str(tmp_path / "blobs"))


@pytest.fixture
def provider():
    return ScriptedProvider()


@pytest.fixture
def make_user(session_maker):
    async def _make_user(**overrides):
        values = {
            "id": str(uuid.uuid4()),
            "email": f"{uuid.uuid4().hex[:10]}@example.com",
            "password_hash": hash_password(TEST_PASSWORD),
            "name": "Test User",
            "tier": "free",
            "credits_remaining": 3,
            "last_credit_reset": datetime.now(timezone.utc),
        }
        values.update(overrides)
        async with session_maker() as session:
            user = User(**values)
            session.add(user)
            await session.commit()
            await session.refresh(user)
            return user

    return _make_user


@pytest.fixture
def auth_headers():
    def _auth_headers(user):
        return {"Authorization": f"Bearer {create_session_token(user.id, user.email)['token']}"}

    return _auth_headers


@pytest_asyncio.fixture
async def api_client(session_maker, blob_storage, provider):
    async def override_get_db():
        async with session_maker() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_ai_provider] = lambda: provider
    app.dependency_overrides[get_blob_storage] = lambda: blob_storage
    app.dependency_overrides[get_payment_processor] = ManualPaymentProcessor
    with patch("services.edits.async_session_maker", session_maker):
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
            yield client

    app.dependency_overrides.clear()
