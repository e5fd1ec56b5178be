import mongomock
import pytest
from flask import redirect
from flask_jwt_extended import create_access_token

from backend.app import create_app
from backend.auth import GOOGLE_CLIENT_KEY
from backend.config import Settings
from backend.database import ConnectionManager

TEST_MONGO_URI = "mongodb://localhost:27017/storefront_test"
FRONTEND_URL = "http://shop.test"


class ScheduledCall:
    def __init__(self, delay, callback):
        self.delay = delay
        self.callback = callback
        self.cancelled = False
        self.ran = False

    def cancel(self):
        self.cancelled = True


class RecordingScheduler:
    """Collects scheduled callbacks so each test decides when they run."""

    def __init__(self):
        self.calls = []

    def __call__(self, delay, callback):
        call = ScheduledCall(delay, callback)
        self.calls.append(call)
        return call

    @property
    def pending(self):
        return [call for call in self.calls if not call.cancelled and not call.ran]

    @property
    def delays(self):
        return [call.delay for call in self.calls]

    def run_next(self):
        call = self.pending[0]
        call.ran = True
        return call.callback()


class FakeGoogleClient:
    def __init__(self, userinfo=None, error=None):
        self.profile = userinfo
        self.error = error
        self.redirect_uri = None

    def authorize_redirect(self, redirect_uri):
        self.redirect_uri = redirect_uri
        return redirect("https://accounts.google.com/o/oauth2/v2/auth?client_id=test")

    def authorize_access_token(self):
        if self.error is not None:
            raise self.error
        return {"access_token": "google-access-token", "userinfo": self.profile}

    def userinfo(self, token=None):
        return self.profile


@pytest.fixture
def scheduler():
    return RecordingScheduler()


@pytest.fixture
def mongo_client():
    return mongomock.MongoClient()


@pytest.fixture
def connection(scheduler, mongo_client):
    manager = ConnectionManager(
        TEST_MONGO_URI,
        client_factory=lambda uri, **options: mongo_client,
        scheduler=scheduler,
    )
    yield manager
    manager.close()


@pytest.fixture
def db(mongo_client):
    return mongo_client["storefront_test"]


@pytest.fixture
def make_settings(tmp_path):
    def factory(**overrides):
        values = {
            "environment": "development",
            "frontend_url": FRONTEND_URL,
            "upload_folder": str(tmp_path / "uploads"),
            "jwt_secret_key": "test-jwt-secret-key-that-is-long-enough",
            "secret_key": "test-session-secret",
        }
        values.update(overrides)
        return Settings(**values)

    return factory


@pytest.fixture
def make_app(make_settings, connection, scheduler):
    def factory(resource_blueprints=None, **overrides):
        app = create_app(
            make_settings(**overrides),
            connection=connection,
            resource_blueprints=resource_blueprints,
        )
        if scheduler.pending:
            scheduler.run_next()
        return app

    return factory


@pytest.fixture
def app(make_app):
    return make_app()


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def auth_headers(app):
    with app.app_context():
        token = create_access_token(identity="shopper@example.com")
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def install_google_client():
    def install(app, **kwargs):
        fake = FakeGoogleClient(**kwargs)
        app.extensions[GOOGLE_CLIENT_KEY] = fake
        return fake

    return install
