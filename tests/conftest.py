"""Shared test fixtures for Inkframe."""

import httpx
import pytest
from httpx import ASGITransport, AsyncClient

from inkframe.common.config import InkframeSettings
from inkframe.common.database import DatabaseManager
from inkframe.providers.together import ProviderImage

SECRET_KEY = "test-secret-key-for-unit-tests"
PROVIDER_IMAGE_URL = "https://images.provider.test/generated/abc123.png"
IMAGE_BYTES = b"\x89PNG\r\n\x1a\n" + b"\x00" * 256
START_TIME = 1_800_000_000.0


def make_settings(**overrides) -> InkframeSettings:
    defaults = {
        "secret_key": SECRET_KEY,
        "db_url": "sqlite+aiosqlite://",
        "together_api_key": "test-together-key",
    }
    defaults.update(overrides)
    return InkframeSettings(**defaults)


class FakeClock:
    """Deterministic replacement for time.time."""

    def __init__(self, now: float = START_TIME):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeImageClient:
    """Image backend double: records calls, fails per profile id on demand."""

    def __init__(self, url: str = PROVIDER_IMAGE_URL):
        self.url = url
        self.calls = []
        self.failures: dict[str, BaseException] = {}

    async def generate_image(self, profile, request):
        self.calls.append((profile.id, request))
        error = self.failures.get(profile.id)
        if error is not None:
            raise error
        return ProviderImage(url=self.url, raw={"data": [{"url": self.url}]})

    def fail_all(self, error: BaseException) -> None:
        for profile_id in ("together-primary", "together-fallback"):
            self.failures[profile_id] = error


def image_transport(status_code: int = 200, content: bytes = IMAGE_BYTES) -> httpx.MockTransport:
    """Transport that serves ``content`` for every GET, like a provider CDN."""

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(
            status_code,
            content=content,
            headers={"content-type": "image/png"},
        )

    return httpx.MockTransport(handler)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def settings():
    return make_settings()


@pytest.fixture
async def db(settings):
    manager = DatabaseManager(settings)
    await manager.init()
    await manager.create_all()
    yield manager
    await manager.close()


@pytest.fixture
async def file_db(tmp_path):
    """File-backed database: separate connections, real write locking."""
    manager = DatabaseManager(make_settings(db_url=f"sqlite+aiosqlite:///{tmp_path / 'inkframe.db'}"))
    await manager.init()
    await manager.create_all()
    yield manager
    await manager.close()


@pytest.fixture
def fake_image_client():
    return FakeImageClient()


@pytest.fixture
def storage(settings, tmp_path):
    from inkframe.storage.service import LocalObjectStorage
    return LocalObjectStorage(
        settings, base_path=str(tmp_path / "images"), transport=image_transport(),
    )


@pytest.fixture
def app(monkeypatch, tmp_path, request, fake_image_client):
    """Create a test app with in-memory DB, fake image backend and local storage."""
    monkeypatch.setenv("INKFRAME_DB_URL", "sqlite+aiosqlite://")
    monkeypatch.setenv("INKFRAME_SECRET_KEY", SECRET_KEY)
    monkeypatch.setenv("INKFRAME_TOGETHER_API_KEY", "test-together-key")
    monkeypatch.setenv("INKFRAME_STORAGE_LOCAL_PATH", str(tmp_path / "images"))
    marker = request.node.get_closest_marker("settings")
    if marker is not None:
        for name, value in marker.kwargs.items():
            monkeypatch.setenv(f"INKFRAME_{name.upper()}", str(value))

    # Clear caches and singletons so new env vars take effect
    from inkframe.common.config import get_settings
    get_settings.cache_clear()

    from inkframe.deps import reset_singletons, set_image_client, set_object_storage
    reset_singletons()

    from inkframe.storage.service import LocalObjectStorage
    set_image_client(fake_image_client)
    set_object_storage(LocalObjectStorage(get_settings(), transport=image_transport()))

    from inkframe.app import create_app
    yield create_app()

    reset_singletons()
    get_settings.cache_clear()


@pytest.fixture
async def client(app):
    # Manually init DB since ASGITransport doesn't run lifespan
    from inkframe.deps import get_db
    db = get_db()
    await db.init()
    await db.create_all()

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    await db.close()


@pytest.fixture
def auth_headers(app):
    """Factory: bearer headers for a user id."""
    from inkframe.common.security import issue_user_token

    def _headers(user_id: str = "alice", idempotency_key: str | None = None) -> dict:
        headers = {"Authorization": f"Bearer {issue_user_token(user_id)}"}
        if idempotency_key is not None:
            headers["X-Idempotency-Key"] = idempotency_key
        return headers

    return _headers
