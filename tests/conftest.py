"""Shared test fixtures."""
import os

# Configure the service before any application module is imported
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["TELEMETRY_ENABLED"] = "false"
os.environ["JWT_SECRET"] = "test-secret-with-enough-bytes-for-hs256-signing"
os.environ["BLOB_STORAGE_BUCKET"] = "marketplace-test"
os.environ["BLOB_STORAGE_API_URL"] = "https://storage.test"
os.environ["BLOB_STORAGE_PUBLIC_URL"] = "https://cdn.test"
os.environ.setdefault("RATE_LIMIT_PER_MINUTE_IP", "100000")
os.environ.setdefault("RATE_LIMIT_PER_MINUTE_USER", "100000")

from typing import Any, Dict  # noqa: E402
from urllib.parse import unquote  # noqa: E402

import fakeredis  # noqa: E402
import httpx  # noqa: E402
import pytest  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402

import database  # noqa: E402
from config import (  # noqa: E402
    BLOB_STORAGE_API_URL,
    BLOB_STORAGE_BUCKET,
    BLOB_STORAGE_PUBLIC_URL,
    JWT_SECRET
)
from main import app  # noqa: E402
from models import Base, Product  # noqa: E402
from services.blob_storage import BlobStorageClient  # noqa: E402
from services.cart_service import CartService  # noqa: E402
from services.conversation_store import ConversationStore  # noqa: E402
from services.identity_provider import CallerIdentity, IdentityProvider  # noqa: E402
from services.order_processor import OrderProcessor  # noqa: E402
from services.product_catalog import ProductCatalog  # noqa: E402
from services.sales_ledger import SalesLedger  # noqa: E402


class FakeBucket:
    """In-memory storage API served through ``httpx.MockTransport``."""

    def __init__(self):
        self.objects: Dict[str, bytes] = {}
        self.fail_uploads = False
        self.fail_deletes = False

    def handler(self, request: httpx.Request) -> httpx.Response:
        if request.method == "POST":
            if self.fail_uploads:
                return httpx.Response(503, json={"error": "unavailable"})
            name = request.url.params["name"]
            self.objects[name] = request.content
            return httpx.Response(200, json={"bucket": BLOB_STORAGE_BUCKET, "name": name})
        if request.method == "DELETE":
            if self.fail_deletes:
                return httpx.Response(503, json={"error": "unavailable"})
            name = unquote(request.url.raw_path.decode().split("/o/", 1)[1])
            if self.objects.pop(name, None) is None:
                return httpx.Response(404, json={"error": "not found"})
            return httpx.Response(204)
        return httpx.Response(405)


@pytest.fixture(autouse=True)
def reset_database():
    Base.metadata.drop_all(bind=database.engine)
    Base.metadata.create_all(bind=database.engine)
    yield


@pytest.fixture
def db():
    session = database.SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def redis_client():
    return fakeredis.FakeRedis(decode_responses=True)


@pytest.fixture
def bucket():
    return FakeBucket()


@pytest.fixture
def http_client(bucket):
    return httpx.AsyncClient(transport=httpx.MockTransport(bucket.handler))


@pytest.fixture
def identity_provider():
    return IdentityProvider(secret=JWT_SECRET)


@pytest.fixture
def storage(http_client):
    return BlobStorageClient(
        http_client,
        bucket=BLOB_STORAGE_BUCKET,
        api_url=BLOB_STORAGE_API_URL,
        public_url=BLOB_STORAGE_PUBLIC_URL
    )


@pytest.fixture
def catalog(storage):
    return ProductCatalog(storage)


@pytest.fixture
def cart_service(redis_client):
    return CartService(redis_client)


@pytest.fixture
def conversations(redis_client):
    return ConversationStore(redis_client)


@pytest.fixture
def order_processor(redis_client, cart_service, catalog):
    return OrderProcessor(redis_client, cart_service, catalog)


@pytest.fixture
def ledger(redis_client):
    return SalesLedger(redis_client)


@pytest.fixture
def buyer():
    return CallerIdentity(id="b" * 32, email="buyer@example.com", user_type="buyer")


@pytest.fixture
def seller():
    return CallerIdentity(id="5" * 32, email="seller@example.com", user_type="seller")


@pytest.fixture
def make_product(db):
    """Insert a product row directly."""

    def _make(owner: CallerIdentity, **fields: Any) -> Product:
        values = {
            "name": "Brake pad",
            "description": "Front brake pad set",
            "price": 25.0,
            "stock": 1,
            "is_available": True,
            "category": "Brakes",
            "condition": "New",
            "image_url": f"https://placehold.co/600x400?text={owner.id[:4]}",
        }
        values.update(fields)
        product = Product(owner_id=owner.id, seller_email=owner.email, **values)
        db.add(product)
        db.commit()
        db.refresh(product)
        return product

    return _make


@pytest.fixture
def client(redis_client, http_client, identity_provider):
    """Test client with the process-wide clients replaced by fakes.

    The lifespan is not run, so nothing connects to real services.
    """
    app.state.redis_client = redis_client
    app.state.http_client = http_client
    app.state.identity_provider = identity_provider
    yield TestClient(app)
    app.state.redis_client = None
    app.state.http_client = None
    app.state.identity_provider = None


@pytest.fixture
def register_user(client):
    """Register a user through the API and return its id, email and auth headers."""
    counter = {"n": 0}

    def _register(user_type: str = "buyer", email: str = None) -> Dict[str, Any]:
        counter["n"] += 1
        email = email or f"{user_type}{counter['n']}@example.com"
        r = client.post("/users/register", json={
            "email": email,
            "password": "s3cret-pass",
            "name": f"{user_type.title()} {counter['n']}",
            "userType": user_type
        })
        assert r.status_code == 201, r.text
        body = r.json()
        return {
            "id": body["userId"],
            "email": body["email"],
            "token": body["token"],
            "headers": {"Authorization": f"Bearer {body['token']}"},
            "identity": CallerIdentity(id=body["userId"], email=body["email"], user_type=user_type)
        }

    return _register
