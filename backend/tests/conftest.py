"""Shared test fixtures and configuration for backend tests."""
import asyncio
import base64
from datetime import datetime, timedelta
from typing import List

import pytest
import pytest_asyncio
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketState

from facechat.auth.faces import FaceMatcher
from facechat.auth.schemas import Identity
from facechat.auth.service import TokenService
from facechat.auth.users import UserDirectory
from facechat.chat.broadcaster import RoomBroadcaster
from facechat.chat.pipeline import MessagePipeline
from facechat.chat.presence import TypingTracker
from facechat.chat.registry import ConnectionRegistry
from facechat.config import AppConfig, EmailSettings, FaceSettings, JWTSecrets, Secrets, StoreSettings
from facechat.database import Database
from facechat.mail import Mailer
from facechat.main import create_app
from facechat.rooms.invitations import InvitationService
from facechat.rooms.store import RoomStore


def face_image(label: str) -> str:
    """A data-URL 'photo' whose bytes identify the person in it."""
    return "data:image/png;base64," + base64.b64encode(label.encode()).decode()


class FakeFaceMatcher(FaceMatcher):
    """Detects a face unless the image is 'noface'; faces match on equal bytes."""

    def detect_face(self, image: bytes) -> bool:
        return image != b"noface"

    def compare_faces(self, source: bytes, target: bytes) -> bool:
        return source == target


class RecordingMailer(Mailer):
    def __init__(self) -> None:
        self.sent: List[dict] = []

    def send(self, to: str, subject: str, html_body: str, text_body: str) -> bool:
        self.sent.append({"to": to, "subject": subject, "html": html_body, "text": text_body})
        return True


class FakeClock:
    """Controllable wall clock (naive UTC)."""

    def __init__(self, start: datetime = datetime(2025, 1, 1, 12, 0, 0)) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


class FakeMonotonic:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def database():
    db = Database(":memory:", max_retries=8)
    yield db
    db.close()


@pytest.fixture
def users(database, clock):
    return UserDirectory(database, clock=clock)


@pytest.fixture
def store(database, clock):
    return RoomStore(database, clock=clock)


@pytest.fixture
def invitations(store):
    return InvitationService(store, ttl_days=7)


@pytest.fixture
def make_user(users):
    """Create an account: make_user("alice") -> UserRecord with alice@example.com."""

    def _make(username: str, email: str = None):
        return users.create(username, email or f"{username}@example.com", "hash", "template")

    return _make


@pytest.fixture
def test_config():
    return AppConfig(
        store=StoreSettings(db_path=":memory:", max_retries=8),
        face=FaceSettings(provider="disabled"),
        email=EmailSettings(provider="log"),
        secrets=Secrets(jwt=JWTSecrets(secret_key="test-secret", refresh_secret_key="test-refresh-secret")),
    )


@pytest.fixture
def mailer():
    return RecordingMailer()


@pytest.fixture
def monotonic():
    return FakeMonotonic()


@pytest.fixture
def app(test_config, mailer, clock, monotonic):
    return create_app(
        config=test_config,
        face_matcher=FakeFaceMatcher(),
        mailer=mailer,
        clock=clock,
        monotonic=monotonic,
    )


@pytest.fixture
def api_client(app):
    """TestClient with the lifespan running (services built, registry started)."""
    with TestClient(app) as client:
        yield client


@pytest.fixture
def services(api_client):
    return api_client.app.state.services


@pytest.fixture
def account(services):
    """Create an account directly and return (user, bearer token)."""

    def _account(username: str, email: str = None):
        user = services.users.create(
            username,
            email or f"{username}@example.com",
            services.passwords.hash("pw-" + username),
            base64.b64encode(username.encode()).decode(),
        )
        token = services.tokens.issue(Identity(userId=user.id, username=user.username))
        return user, token

    return _account


def auth_headers(token: str) -> dict:
    return {"Authorization": f"Bearer {token}"}


# ---------------------------------------------------------------------------
# Realtime components without a server
# ---------------------------------------------------------------------------


class FakeSocket:
    """Stands in for a websocket: records sent events and close calls."""

    def __init__(self, fail: bool = False, delay: float = 0.0) -> None:
        self.sent: List[dict] = []
        self.closed = None
        self.fail = fail
        self.delay = delay
        self.application_state = WebSocketState.CONNECTED
        self.client_state = WebSocketState.CONNECTED

    async def send_json(self, data: dict) -> None:
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail:
            raise RuntimeError("socket is gone")
        self.sent.append(data)

    async def close(self, code: int = 1000, reason: str = None) -> None:
        self.closed = (code, reason)
        self.application_state = WebSocketState.DISCONNECTED

    def events(self, type_: str) -> List[dict]:
        return [e for e in self.sent if e.get("type") == type_]


async def eventually(predicate, timeout: float = 2.0) -> None:
    """Yield to the loop until ``predicate()`` holds or ``timeout`` passes."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met within %.1fs" % timeout)
        await asyncio.sleep(0.005)


@pytest.fixture
def tokens():
    return TokenService(secret_key="unit-secret", refresh_secret_key="unit-refresh")


@pytest.fixture
def broadcaster():
    return RoomBroadcaster()


@pytest.fixture
def typing(broadcaster, monotonic):
    return TypingTracker(broadcaster, debounce_seconds=2.0, expiry_seconds=8.0, clock=monotonic)


@pytest_asyncio.fixture
async def registry(tokens, store, broadcaster, typing):
    """Registry whose connections are all closed at teardown."""
    registry = ConnectionRegistry(tokens, store, broadcaster, typing, queue_size=8, send_timeout=0.2)
    yield registry
    await registry.stop()


@pytest.fixture
def pipeline(store, broadcaster, typing):
    return MessagePipeline(store, broadcaster, typing)
