import mongomock
import pytest
from fastapi.testclient import TestClient

from auth import create_access_token
from database import create_document, ensure_indexes
from main import create_app
from media import LocalMediaStore
from presence import PresenceTracker
from schemas import User
from store import ChatStore

QUIET = 0.1


class FakeSession:
    """In-memory stand-in for a websocket."""

    def __init__(self):
        self.sent = []

    async def send_json(self, message):
        self.sent.append(message)

    def events(self, event_type=None):
        return [m["data"] for m in self.sent if event_type is None or m["type"] == event_type]


class BrokenSession(FakeSession):
    async def send_json(self, message):
        raise RuntimeError("socket closed")


@pytest.fixture
def db():
    database = mongomock.MongoClient()["chat_test"]
    ensure_indexes(database)
    return database


@pytest.fixture
def store(db):
    return ChatStore(db)


@pytest.fixture
def make_user(db):
    def make(name):
        return create_document(db, "user", User(name=name, avatar_url=f"https://img.example/{name}.png"))
    return make


@pytest.fixture
def alice(make_user):
    return make_user("alice")


@pytest.fixture
def bob(make_user):
    return make_user("bob")


@pytest.fixture
def carol(make_user):
    return make_user("carol")


@pytest.fixture
async def presence(store):
    tracker = PresenceTracker(store, typing_quiet_period=QUIET)
    yield tracker
    await tracker.shutdown()


@pytest.fixture
def app(db, tmp_path):
    return create_app(
        database=db,
        media_store=LocalMediaStore(root=str(tmp_path), base_url="/media"),
        typing_quiet_period=QUIET,
    )


@pytest.fixture
def client(app):
    with TestClient(app) as c:
        yield c


def auth_header(user_id):
    return {"Authorization": f"Bearer {create_access_token({'sub': user_id})}"}


def token_for(user_id):
    return create_access_token({"sub": user_id})
