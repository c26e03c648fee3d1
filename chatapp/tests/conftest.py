import os
import sys
import tempfile
import uuid
from pathlib import Path

import pytest
import pytest_asyncio

# Configure test environment before the app modules read it
os.environ['DATABASE_URL'] = os.getenv(
    'TEST_DATABASE_URL',
    f"sqlite+aiosqlite:///{Path(tempfile.gettempdir()) / 'chatapp_test.db'}",
)
os.environ.pop('REDIS_URL', None)

# Ensure the package root is on sys.path when pytest changes CWD to this tests dir
HERE = Path(__file__).resolve()
PKG_ROOT = HERE.parents[2]
if str(PKG_ROOT) not in sys.path:
    sys.path.insert(0, str(PKG_ROOT))

from chatapp import profiles, storage  # noqa: E402
from chatapp.auth import create_access_token  # noqa: E402
from chatapp.errors import NotFound, TransientStorageError  # noqa: E402
from chatapp.models import Base, engine  # noqa: E402


@pytest_asyncio.fixture
async def db():
    """Fresh schema plus the world conversation for every test"""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)
    await profiles.bootstrap_world_conversation()
    yield engine


@pytest_asyncio.fixture
async def make_user(db):
    async def _make(username=None, full_name=None):
        user_id = uuid.uuid4()
        await profiles.provision_profile(user_id, username, full_name)
        return user_id
    return _make


@pytest.fixture
def fake_storage(monkeypatch):
    """In-memory object storage; uploads with an extension listed in `fail` raise like an outage"""
    class FakeStorage:
        def __init__(self):
            self.objects = {}
            self.fail = set()

        async def upload_object(self, bucket, path, data, content_type):
            if path.rsplit('.', 1)[-1] in self.fail:
                raise TransientStorageError('Upload failed, please retry')
            self.objects[(bucket, path)] = (data, content_type)
            return storage.public_url(bucket, path)

        async def delete_object(self, bucket, path, owner_id):
            if path.split('/', 1)[0] != str(owner_id):
                raise NotFound('Object not found')
            return self.objects.pop((bucket, path), None) is not None

    fake = FakeStorage()
    monkeypatch.setattr(storage, 'upload_object', fake.upload_object)
    monkeypatch.setattr(storage, 'delete_object', fake.delete_object)
    return fake


def auth_headers(user_id):
    return {'Authorization': f"Bearer {create_access_token({'sub': user_id})}"}


@pytest.fixture
def headers():
    return auth_headers


@pytest.fixture
def events(monkeypatch):
    """Collect everything published on the change feed during a test"""
    from chatapp.feed import feed

    collected = []
    original = feed._deliver

    async def record(event):
        collected.append(event)
        await original(event)

    monkeypatch.setattr(feed, '_deliver', record)
    return collected
