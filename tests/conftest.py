"""Pytest fixtures for storefront tests."""

import bcrypt
import mongomock
import pytest
from flask_jwt_extended import create_access_token

from storefront import create_app
from storefront.otp import InMemoryOtpStore
from storefront.storage import LocalImageStorage
from storefront.utils import utcnow

ADMIN_EMAIL = "admin@nikola.test"
JWT_TEST_SECRET = "storefront-test-secret-key-with-enough-length"


class RecordingMailer:
    """Mailer double that keeps every message instead of sending it."""

    def __init__(self, succeed=True):
        self.succeed = succeed
        self.sent = []

    def send(self, recipients, subject, html, text=""):
        self.sent.append(
            {"to": list(recipients), "subject": subject, "html": html, "text": text}
        )
        if self.succeed:
            return True, None
        return False, "Delivery refused"

    def last_to(self, email):
        for message in reversed(self.sent):
            if email in message["to"]:
                return message
        return None


class FakeClock:
    def __init__(self, start=1000.0):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


@pytest.fixture
def database():
    return mongomock.MongoClient().storefront_test


@pytest.fixture
def mailer():
    return RecordingMailer()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def otp_store(clock):
    return InMemoryOtpStore(clock=clock)


@pytest.fixture
def app_config():
    return {
        "TESTING": True,
        "JWT_SECRET_KEY": JWT_TEST_SECRET,
        "ADMIN_EMAIL": ADMIN_EMAIL,
        "ORDER_STRICT_TRANSITIONS": False,
        "OTP_EXPIRATION_MINUTES": 10,
        "ORDERS_PAGE_SIZE": 10,
    }


@pytest.fixture
def app(app_config, database, mailer, otp_store, tmp_path):
    return create_app(
        app_config,
        database=database,
        mailer=mailer,
        otp_store=otp_store,
        image_storage=LocalImageStorage(str(tmp_path / "uploads")),
    )


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def make_user(database):
    """Insert a user document and return it."""

    def _make_user(email, name="Test User", role="user", password="secret123", **extra):
        user_document = {
            "name": name,
            "email": email,
            "password": bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt(4)),
            "role": role,
            "phone": "",
            "address": "",
            "is_active": True,
            "is_newsletter_subscribed": False,
            "created_at": utcnow(),
        }
        user_document.update(extra)
        user_document["_id"] = database.users.insert_one(user_document).inserted_id
        return user_document

    return _make_user


@pytest.fixture
def auth_headers(app):
    """Build an Authorization header for an email address."""

    def _auth_headers(email):
        with app.app_context():
            token = create_access_token(identity=email)
        return {"Authorization": f"Bearer {token}"}

    return _auth_headers


@pytest.fixture
def admin_user(make_user):
    return make_user(ADMIN_EMAIL, name="Store Admin", role="admin")


@pytest.fixture
def admin_headers(admin_user, auth_headers):
    return auth_headers(admin_user["email"])


@pytest.fixture
def customer(make_user):
    return make_user("jane@example.com", name="Jane Doe")


@pytest.fixture
def customer_headers(customer, auth_headers):
    return auth_headers(customer["email"])


@pytest.fixture
def product(database):
    timestamp = utcnow()
    product_document = {
        "code": "PROD-00001",
        "name": "Linen Shirt",
        "description": "Breathable summer shirt",
        "price": 30.0,
        "category": ["men"],
        "sizes": ["M", "L"],
        "colors": ["white"],
        "images": [],
        "stock": 12,
        "featured": False,
        "created_at": timestamp,
        "updated_at": timestamp,
    }
    product_document["_id"] = database.products.insert_one(product_document).inserted_id
    return product_document
