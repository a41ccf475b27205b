import fnmatch
import os
import tempfile
from decimal import Decimal
from pathlib import Path

# The application reads its configuration at import time, so the test
# environment has to be in place before any backend module is imported.
_TMP_DIR = Path(tempfile.mkdtemp(prefix="cafeteria-tests-"))
os.environ["DATABASE_URL"] = f"sqlite:///{_TMP_DIR / 'test.db'}"
os.environ["SECRET_KEY"] = "test-secret-key-for-the-cafeteria-api"
os.environ["PAYMENT_PROCESSING_DELAY"] = "0"
os.environ["REDIS_HOST"] = "127.0.0.1"
os.environ["REDIS_PORT"] = "1"
os.environ.pop("REDIS_SERVICE_PORT", None)
os.environ["SEED_SAMPLE_MENU"] = "false"

import pytest  # noqa: E402
import redis  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402

import auth  # noqa: E402
import database  # noqa: E402
import lifecycle  # noqa: E402
import models  # noqa: E402
from main import app  # noqa: E402
from models import Role  # noqa: E402
from schemas import OrderItemCreate  # noqa: E402

PASSWORD = "secret123"
_PASSWORD_HASH = auth.get_password_hash(PASSWORD)


class RecordingHub:
    """Stands in for the notification hub and remembers what was published."""

    def __init__(self):
        self.events = []

    def publish(self, room, event, payload):
        self.events.append((room, event, payload))
        return 1

    def named(self, event):
        return [(room, payload) for room, name, payload in self.events if name == event]


class FailingHub:
    def publish(self, room, event, payload):
        raise ConnectionError("socket transport is down")


class FakeRedis:
    """In-memory stand-in for the handful of redis commands the API uses."""

    def __init__(self, *args, **kwargs):
        self.store = {}
        self.ttls = {}
        self.down = False

    def _check(self):
        if self.down:
            raise redis.ConnectionError("redis went away")

    def ping(self):
        self._check()
        return True

    def get(self, key):
        self._check()
        return self.store.get(key)

    def setex(self, key, ttl, value):
        self._check()
        self.store[key] = value
        self.ttls[key] = ttl
        return True

    def keys(self, pattern="*"):
        self._check()
        return [key for key in self.store if fnmatch.fnmatchcase(key, pattern)]

    def delete(self, *keys):
        self._check()
        removed = 0
        for key in keys:
            if self.store.pop(key, None) is not None:
                removed += 1
            self.ttls.pop(key, None)
        return removed

    def incr(self, key):
        self._check()
        self.store[key] = str(int(self.store.get(key, 0)) + 1)
        return int(self.store[key])

    def expire(self, key, seconds):
        self._check()
        self.ttls[key] = seconds
        return True


def make_user(db, email, role=Role.STUDENT, name="Test User", is_active=True):
    user = models.User(
        email=email,
        password=_PASSWORD_HASH,
        name=name,
        role=role.value,
        is_active=is_active,
    )
    db.add(user)
    db.commit()
    db.refresh(user)
    return user


def make_menu_item(db, name, price, category="lunch", is_available=True, preparation_time=15):
    item = models.MenuItem(
        name=name,
        description=f"{name} freshly made in the campus kitchen",
        price=Decimal(price),
        category=category,
        is_available=is_available,
        preparation_time=preparation_time,
    )
    db.add(item)
    db.commit()
    db.refresh(item)
    return item


def line(menu_item, quantity=1, special_instructions=None):
    return OrderItemCreate(menu_item_id=menu_item.id, quantity=quantity, special_instructions=special_instructions)


def auth_headers(user):
    return {"Authorization": f"Bearer {auth.create_user_token(user)}"}


@pytest.fixture(autouse=True)
def reset_database():
    database.Base.metadata.drop_all(bind=database.engine)
    database.init_db()
    yield


@pytest.fixture
def db():
    session = database.SessionLocal()
    yield session
    session.close()


@pytest.fixture
def client():
    return TestClient(app)


@pytest.fixture
def events(monkeypatch):
    recorder = RecordingHub()
    monkeypatch.setattr(lifecycle, "hub", recorder)
    return recorder


@pytest.fixture
def student(db):
    return make_user(db, "john.student@college.edu", Role.STUDENT, "John Smith")


@pytest.fixture
def other_student(db):
    return make_user(db, "emily.student@college.edu", Role.STUDENT, "Emily Davis")


@pytest.fixture
def staff(db):
    return make_user(db, "sarah.staff@college.edu", Role.STAFF, "Sarah Johnson")


@pytest.fixture
def other_staff(db):
    return make_user(db, "mike.staff@college.edu", Role.STAFF, "Mike Wilson")


@pytest.fixture
def admin(db):
    return make_user(db, "admin@college.edu", Role.ADMIN, "Admin User")


@pytest.fixture
def menu(db):
    return {
        "pancakes": make_menu_item(db, "Classic Pancakes", "8.99", category="breakfast", preparation_time=10),
        "fries": make_menu_item(db, "French Fries", "3.50", category="snacks", preparation_time=7),
        "salmon": make_menu_item(db, "Grilled Salmon", "18.99", category="dinner", preparation_time=25),
        "soup": make_menu_item(db, "Tomato Soup", "4.25", category="lunch", is_available=False),
    }


@pytest.fixture
def placed_order(db, student, menu, events):
    return lifecycle.place_order(
        db,
        student,
        [line(menu["pancakes"], 2), line(menu["fries"], 1)],
        "pickup",
        payment_method="cash",
    )


@pytest.fixture
def fake_redis(monkeypatch):
    """Route the API's cache and rate limiter to an in-memory redis."""
    import main
    import redis_client

    server = FakeRedis()
    monkeypatch.setattr(redis_client.redis, "Redis", lambda *args, **kwargs: server)
    cache = redis_client.RedisClient()
    monkeypatch.setattr(redis_client, "redis_client", cache)
    monkeypatch.setattr(main, "redis_client", cache)
    return server
