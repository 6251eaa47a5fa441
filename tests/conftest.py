import os

os.environ.setdefault("SECRET_KEY", "test-secret-key")
os.environ.setdefault("JWT_SECRET_KEY", "test-jwt-secret")
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite://")
os.environ["STORAGE_BACKEND"] = "local"
os.environ["ENVIRONMENT"] = "test"
os.environ["RATE_LIMIT_PER_MINUTE"] = "100000"
os.environ["LINK_PASSWORD_BCRYPT_ROUNDS"] = "4"

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import sessionmaker

from foldly.core.actor import Actor
from foldly.core.errors import StorageUnavailable
from foldly.core.security import create_access_token
from foldly.db.base import Base
from foldly.db.session import build_engine
from foldly.models import user, workspace, folder, link, permission, file  # noqa: F401
from foldly.models.workspace import Workspace
from foldly.services.files import FileService
from foldly.services.folders import FolderService
from foldly.services.links import LinkService
from foldly.services.permissions import PermissionEngine
from foldly.services.quota import QuotaAccountant
from foldly.services.storage import LocalStorageService
from foldly.services.workspaces import WorkspaceService

OWNER_ID = "user_owner"
OWNER_EMAIL = "owner@example.com"


class FlakyStorage(LocalStorageService):
    """Local storage that fails on demand."""

    def __init__(self, root):
        super().__init__(root)
        self.fail_puts = False
        self.failing_deletes = set()

    def put(self, path, data, content_type=None):
        if self.fail_puts:
            raise StorageUnavailable("injected put failure", {"path": path})
        super().put(path, data, content_type)

    def delete(self, path):
        if path in self.failing_deletes:
            raise StorageUnavailable("injected delete failure", {"path": path})
        super().delete(path)


@pytest.fixture
async def engine(tmp_path):
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(engine, class_=AsyncSession, expire_on_commit=False, autoflush=False)


@pytest.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def storage(tmp_path):
    return FlakyStorage(str(tmp_path / "blobs"))


@pytest.fixture
def outbox():
    """Verification codes that would have been mailed, as (email, code) pairs."""
    return []


@pytest.fixture
def otp_sender(outbox):
    def send(email, code, link):
        outbox.append((email, code))
    return send


@pytest.fixture
async def owner(db):
    await WorkspaceService(db).provision_user(OWNER_ID, OWNER_EMAIL, "Owner")
    return Actor.user(OWNER_ID, OWNER_EMAIL)


@pytest.fixture
async def workspace(db, owner):
    return await WorkspaceService(db).get_workspace_for_user(owner.user_id)


@pytest.fixture
def permissions(db, otp_sender):
    return PermissionEngine(db, otp_sender)


@pytest.fixture
def quota(db):
    return QuotaAccountant(db)


@pytest.fixture
def folders(db, storage, permissions, quota):
    return FolderService(db, storage, permissions, quota)


@pytest.fixture
def files(db, storage, permissions, quota):
    return FileService(db, storage, permissions, quota)


@pytest.fixture
def links(db):
    return LinkService(db)


async def used_bytes(db, workspace_id):
    result = await db.execute(select(Workspace.storage_used_bytes).where(Workspace.id == workspace_id))
    return result.scalar_one()


async def set_storage_limit(db, workspace_id, limit):
    ws = await db.get(Workspace, workspace_id)
    ws.storage_limit_bytes = limit
    await db.commit()


def auth_headers(user_id=OWNER_ID, email=OWNER_EMAIL, verified=True):
    token = create_access_token({"sub": user_id, "email": email, "email_verified": verified})
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
async def client(session_factory, storage, otp_sender):
    from foldly.api.v1.auth import get_otp_sender, get_storage
    from foldly.db.session import get_db
    from foldly.main import app

    async def override_get_db():
        async with session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_storage] = lambda: storage
    app.dependency_overrides[get_otp_sender] = lambda: otp_sender

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as c:
        yield c

    app.dependency_overrides.clear()
