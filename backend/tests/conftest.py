import os
from datetime import datetime, timezone

# Ensure JWT_SECRET exists before importing vaultscan.main (it calls require_jwt_secret() at import time),
# and keep the module-level engine off Postgres.
os.environ.setdefault("JWT_SECRET", "test_jwt_secret")
os.environ.setdefault("DATABASE_URL", "sqlite+pysqlite:///:memory:")

from contextlib import contextmanager
from dataclasses import dataclass, field
from urllib.parse import quote

import httpx
import pytest
from botocore.exceptions import ClientError
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from vaultscan.auth.identity import Identity
from vaultscan.core.base import Base
from vaultscan.core import config as app_config

# Import models so they register with SQLAlchemy metadata.
from vaultscan.models.vault_item import ScanStatus, StorageProvider, VaultItem
from vaultscan.models.quarantined_file import QuarantinedFile  # noqa: F401
from vaultscan.models.file_scan_cache import FileScanCacheEntry  # noqa: F401
from vaultscan.models.notification import Notification  # noqa: F401

from vaultscan.core.database import get_db
from vaultscan.dependencies.auth import get_current_identity
from vaultscan.dependencies.services import get_http_client, get_scanner, get_storage_adapter
from vaultscan.services.cloudmersive import CloudmersiveService
from vaultscan.services.quarantine import QuarantineService
from vaultscan.services.scan_cache import ScanCacheService
from vaultscan.services.storage import StorageAdapter
from vaultscan.services.vault_scans import VaultScanProcessor

OBJECTS_HOST = "objects.test"
SCANNER_BASE_URL = "https://scanner.test"
FIXED_NOW = datetime(2026, 1, 15, 12, 0, 0, tzinfo=timezone.utc)
FIXED_TS_MS = int(FIXED_NOW.timestamp() * 1000)

JPEG_BYTES = bytes.fromhex("FFD8FFE000104A464946") + b"\x00" * 200
PE_BYTES = b"MZ\x90\x00" + b"\x00" * 200


@dataclass
class StoredObject:
    data: bytes
    content_type: str = "application/octet-stream"
    metadata: dict[str, str] = field(default_factory=dict)


class ObjectStore:
    """In-memory stand-in for the R2/B2 buckets, keyed by (bucket, key)."""

    def __init__(self):
        self.objects: dict[tuple[str, str], StoredObject] = {}
        self.deleted: list[tuple[str, str]] = []
        self.fail_put_buckets: set[str] = set()
        self.fail_delete_keys: set[str] = set()

    def put(self, bucket, key, data, content_type="application/octet-stream", metadata=None):
        self.objects[(bucket, key)] = StoredObject(data=data, content_type=content_type, metadata=dict(metadata or {}))

    def has(self, bucket, key) -> bool:
        return (bucket, key) in self.objects

    def keys_in(self, bucket) -> list[str]:
        return sorted(k for b, k in self.objects if b == bucket)


class FakeS3Client:
    def __init__(self, store: ObjectStore, backend: str):
        self.store = store
        self.backend = backend
        self.presigned: list[dict] = []

    def generate_presigned_url(self, ClientMethod, Params, ExpiresIn):  # noqa: N803
        self.presigned.append({"method": ClientMethod, "params": Params, "expires_in": ExpiresIn})
        op = "get" if ClientMethod == "get_object" else "put"
        return f"https://{OBJECTS_HOST}/{Params['Bucket']}/{quote(Params['Key'])}?op={op}&backend={self.backend}"

    def delete_object(self, Bucket, Key):  # noqa: N803
        if Key in self.store.fail_delete_keys:
            raise ClientError({"Error": {"Code": "InternalError", "Message": "delete failed"}}, "DeleteObject")
        self.store.objects.pop((Bucket, Key), None)
        self.store.deleted.append((Bucket, Key))
        return {}


class FakeNetwork:
    """
    Single httpx.MockTransport handler for both the signed object URLs and the
    scanner API. ``scanner_handler`` can be swapped per test.
    """

    def __init__(self, store: ObjectStore):
        self.store = store
        self.scanner_requests: list[httpx.Request] = []
        self.scanner_handler = lambda request: httpx.Response(200, json={"CleanResult": True})

    def handler(self, request: httpx.Request) -> httpx.Response:
        if request.url.host == OBJECTS_HOST:
            return self._object_request(request)
        self.scanner_requests.append(request)
        return self.scanner_handler(request)

    def _object_request(self, request: httpx.Request) -> httpx.Response:
        bucket, _, key = request.url.path.lstrip("/").partition("/")
        if request.method == "GET":
            obj = self.store.objects.get((bucket, key))
            if obj is None:
                return httpx.Response(404, text="NoSuchKey")
            return httpx.Response(200, content=obj.data, headers={"content-type": obj.content_type})
        if request.method == "PUT":
            if bucket in self.store.fail_put_buckets:
                return httpx.Response(503, text="SlowDown")
            metadata = {
                name[len("x-amz-meta-"):]: value
                for name, value in request.headers.items()
                if name.lower().startswith("x-amz-meta-")
            }
            self.store.put(
                bucket,
                key,
                request.content,
                request.headers.get("content-type") or "application/octet-stream",
                metadata,
            )
            return httpx.Response(200)
        return httpx.Response(405)


@pytest.fixture(scope="session")
def db_engine():
    # In-memory SQLite for fast, isolated tests.
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    return engine


@pytest.fixture()
def db_session(db_engine):
    # Important: because we use an in-memory SQLite DB with StaticPool, the DB
    # persists across tests. Reset schema per test to avoid cross-test coupling.
    Base.metadata.drop_all(bind=db_engine)
    Base.metadata.create_all(bind=db_engine)

    TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=db_engine)
    db = TestingSessionLocal()
    try:
        yield db
    finally:
        db.close()


@pytest.fixture(autouse=True)
def _reset_mutable_settings():
    """
    Tests sometimes tweak global settings (app_config.settings.*). Because that object is
    process-global, we must restore values after each test to avoid cross-test coupling.
    """
    keys = [
        "VAULT_SCAN_HOOK_SECRET",
        "PRESCREEN_MODE",
        "FINAL_STORAGE_PROVIDER",
        "FINAL_STORAGE_BUCKET",
        "STAGING_BUCKET",
        "QUARANTINE_BUCKET",
        "QUARANTINE_RETENTION_DAYS",
        "SCAN_BATCH_SIZE",
        "SCHEDULED_SCAN_BATCH_SIZE",
    ]
    original = {k: getattr(app_config.settings, k) for k in keys}
    app_config.settings.STAGING_BUCKET = "test-staging"
    app_config.settings.QUARANTINE_BUCKET = "test-quarantine"
    app_config.settings.FINAL_STORAGE_PROVIDER = "b2"
    app_config.settings.FINAL_STORAGE_BUCKET = "test-final"
    app_config.settings.PRESCREEN_MODE = "advisory"
    try:
        yield
    finally:
        for k, v in original.items():
            setattr(app_config.settings, k, v)


@pytest.fixture()
def object_store():
    return ObjectStore()


@pytest.fixture()
def network(object_store):
    return FakeNetwork(object_store)


@pytest.fixture()
def http_client(network):
    client = httpx.Client(transport=httpx.MockTransport(network.handler))
    try:
        yield client
    finally:
        client.close()


@pytest.fixture()
def s3_clients(object_store):
    clients: dict[str, FakeS3Client] = {}

    def _factory(backend: str) -> FakeS3Client:
        clients[backend] = FakeS3Client(object_store, backend)
        return clients[backend]

    return clients, _factory


@pytest.fixture()
def storage(s3_clients):
    _, factory = s3_clients
    return StorageAdapter(app_config.settings, client_factory=factory)


@pytest.fixture()
def clock():
    return lambda: FIXED_NOW


@pytest.fixture()
def scanner(http_client):
    return CloudmersiveService(api_key="test-api-key", base_url=SCANNER_BASE_URL, http_client=http_client)


@pytest.fixture()
def quarantine_service(db_session, storage, http_client, clock):
    return QuarantineService(db_session, storage, config=app_config.settings, http_client=http_client, clock=clock)


@pytest.fixture()
def scan_cache(db_session, clock):
    return ScanCacheService(db_session, config=app_config.settings, clock=clock)


@pytest.fixture()
def processor(db_session, storage, scanner, quarantine_service, scan_cache, http_client, clock):
    return VaultScanProcessor(
        db_session,
        storage=storage,
        scanner=scanner,
        quarantine=quarantine_service,
        cache=scan_cache,
        config=app_config.settings,
        http_client=http_client,
        clock=clock,
    )


@pytest.fixture()
def make_item(db_session, object_store):
    """
    Create a staged vault item whose bytes already sit in the staging bucket.

    Usage:
        item = make_item(user_id="user-1", name="abc.jpg", data=JPEG_BYTES)
    """

    counter = {"n": 0}

    def _make_item(
        *,
        user_id: str = "user-1",
        name: str = "abc.jpg",
        data: bytes = JPEG_BYTES,
        mime_type: str = "image/jpeg",
        scan_status: ScanStatus = ScanStatus.pending,
        staging_key: str | None = None,
        created_at: datetime | None = None,
        upload: bool = True,
    ) -> VaultItem:
        counter["n"] += 1
        key = staging_key or f"staging/{user_id}/{name}"
        item = VaultItem(
            user_id=user_id,
            name=name,
            mime_type=mime_type,
            size=len(data),
            storage_provider=StorageProvider.r2_staging,
            r2_staging_bucket=app_config.settings.STAGING_BUCKET,
            r2_staging_key=key,
            scan_status=scan_status,
            created_at=created_at or datetime(2026, 1, 1, 0, counter["n"], tzinfo=timezone.utc),
        )
        db_session.add(item)
        db_session.commit()
        db_session.refresh(item)
        if upload:
            object_store.put(app_config.settings.STAGING_BUCKET, key, data, mime_type)
        return item

    return _make_item


@pytest.fixture()
def app(db_session, storage, http_client, scanner):
    # Ensure settings has a JWT secret even if imported earlier.
    app_config.settings.JWT_SECRET = app_config.settings.JWT_SECRET or "test_jwt_secret"

    import vaultscan.main as main

    fastapi_app = main.app

    def override_get_db():
        yield db_session

    fastapi_app.dependency_overrides[get_db] = override_get_db
    fastapi_app.dependency_overrides[get_storage_adapter] = lambda: storage
    fastapi_app.dependency_overrides[get_http_client] = lambda: http_client
    fastapi_app.dependency_overrides[get_scanner] = lambda: scanner
    yield fastapi_app
    fastapi_app.dependency_overrides.clear()


@pytest.fixture()
def client_for(app):
    """
    Context manager to create a client authenticated as an arbitrary caller.

    Usage:
        with client_for("user-1", admin=True) as c:
            ...
    """

    @contextmanager
    def _client_for(user_id: str, *, admin: bool = False):
        identity = Identity(user_id=user_id, is_admin=admin, is_authenticated=True, raw_claims={"sub": user_id})
        app.dependency_overrides[get_current_identity] = lambda: identity
        with TestClient(app) as c:
            yield c
        app.dependency_overrides.pop(get_current_identity, None)

    return _client_for


@pytest.fixture()
def anon_client(app):
    with TestClient(app) as c:
        yield c
