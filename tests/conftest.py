from __future__ import annotations

import pytest

from engine.pipeline import ValidationPipeline
from engine.verifier import VerificationClient
from store.duckdb_io import DuckDBStore
from store.storage import LocalBlobStore

VERIFY_URL = "https://verify.test/verify-email"


class _FakeResponse:
    def __init__(self, behavior, address: str):
        self._behavior = behavior
        self._address = address
        self.status = 200
        self._payload = None

    async def __aenter__(self):
        behavior = self._behavior
        if isinstance(behavior, BaseException) or (
            isinstance(behavior, type) and issubclass(behavior, BaseException)
        ):
            raise behavior
        if isinstance(behavior, int):
            self.status = behavior
        else:
            self._payload = {"email": self._address, **behavior}
        return self

    async def __aexit__(self, exc_type, exc, tb):
        return False

    async def text(self):
        return "" if self._payload is None else str(self._payload)

    async def json(self, content_type=None):
        return self._payload


class FakeVerifyService:
    """Stands in for the aiohttp session talking to the verification service.

    ``responses`` maps an address to a payload dict, an HTTP status code, an
    exception, or a list of those consumed one per call (the last one sticks).
    """

    def __init__(self):
        self.responses: dict = {}
        self.default = {"email_status": "valid", "email_mx": "mx.test", "provider": "generic"}
        self.calls: list[str] = []

    def get(self, url, params=None, timeout=None):
        address = params["email"]
        self.calls.append(address)
        behavior = self.responses.get(address, self.default)
        if isinstance(behavior, list):
            behavior = behavior.pop(0) if len(behavior) > 1 else behavior[0]
        return _FakeResponse(behavior, address)

    async def close(self):
        return None


@pytest.fixture
def verify_service() -> FakeVerifyService:
    return FakeVerifyService()


@pytest.fixture
def sleeps() -> list[float]:
    return []


@pytest.fixture
def verifier(verify_service, sleeps) -> VerificationClient:
    async def no_sleep(seconds):
        sleeps.append(seconds)

    return VerificationClient(VERIFY_URL, session=verify_service, sleep_fn=no_sleep)


@pytest.fixture
def db(tmp_path):
    store = DuckDBStore(tmp_path / "listverify.duckdb")
    yield store
    store.close()


@pytest.fixture
def blob_store(tmp_path) -> LocalBlobStore:
    return LocalBlobStore(tmp_path / "blobs")


@pytest.fixture
def pipeline(blob_store, db, verifier) -> ValidationPipeline:
    return ValidationPipeline(
        blob_store,
        db,
        verifier,
        worker_count=4,
        upload_sleep_fn=lambda seconds: None,
    )
