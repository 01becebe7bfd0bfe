import os
import tempfile

# Configure before any application module reads the environment
_TMP_ROOT = tempfile.mkdtemp(prefix="complaint-portal-tests-")
os.environ.setdefault("LOG_DIR", os.path.join(_TMP_ROOT, "logs"))
os.environ.setdefault("UPLOAD_PATH", os.path.join(_TMP_ROOT, "uploads"))
os.environ["RATE_LIMIT_ENABLED"] = "false"

import pytest
from fastapi.testclient import TestClient

from db import Database
from main import create_app
from storage import BlobStore
from tests.fixtures.fake_db import FakeStore, FakePool


@pytest.fixture
def store():
    return FakeStore()


@pytest.fixture
def pool(store):
    return FakePool(store)


@pytest.fixture
def database(pool):
    return Database(pool=pool)


@pytest.fixture
def blobs(tmp_path):
    return BlobStore(tmp_path / "uploads", max_file_size=1024, chunk_size=64)


@pytest.fixture
def client(database, blobs):
    with TestClient(create_app(database=database, blobs=blobs)) as test_client:
        yield test_client
