# tests/conftest.py - Shared test fixtures
import os
import uuid

import pytest
import pytest_asyncio
from httpx import AsyncClient, ASGITransport
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker

# Use SQLite for tests
TEST_DB_URL = "sqlite+aiosqlite:///./test_board.db"
os.environ["DATABASE_URL"] = TEST_DB_URL
os.environ["JWT_SECRET_KEY"] = "test-secret-key-for-unit-tests-only-min-32-chars"
os.environ["ENVIRONMENT"] = "test"
os.environ["NOTI_SERVICE_URL"] = ""

from models import Base, Project, Attachment, AttachmentStatus, EntityType
from auth import AuthService, CurrentUser
from board_service import BoardEntityService
from custom_fields import CustomFieldCodec
from database import get_db_session
from notifications import NotificationDispatcher, NotificationFanout, NotificationSink, NotificationDeliveryError
from storage import LocalObjectStore
from main import app


class RecordingSink(NotificationSink):
    """Keeps delivered events; raises for users listed in fail_for"""

    def __init__(self):
        self.events = []
        self.fail_for = set()

    async def send(self, event):
        if event.target_user_id in self.fail_for:
            raise NotificationDeliveryError(f"delivery refused for {event.target_user_id}")
        self.events.append(event)

    def of_type(self, kind):
        return [e for e in self.events if e.type == kind]


@pytest_asyncio.fixture(scope="function")
async def db_engine():
    engine = create_async_engine(TEST_DB_URL, echo=False)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


@pytest_asyncio.fixture(scope="function")
async def db_session(db_engine):
    session_factory = async_sessionmaker(db_engine, class_=AsyncSession, expire_on_commit=False)
    async with session_factory() as session:
        yield session


@pytest.fixture
def object_store(tmp_path):
    return LocalObjectStore(root=str(tmp_path), public_url="/files")


@pytest.fixture
def notification_sink():
    return RecordingSink()


@pytest_asyncio.fixture
async def dispatcher(notification_sink):
    dispatcher = NotificationDispatcher(notification_sink, max_queue_size=100, workers=2)
    await dispatcher.start()
    yield dispatcher
    await dispatcher.shutdown(timeout=5)


@pytest.fixture
def fanout(dispatcher):
    return NotificationFanout(dispatcher)


@pytest.fixture
def service(db_session, object_store, fanout):
    """Board service bound to the test session, for service-level tests"""
    return BoardEntityService(db_session, object_store, fanout)


@pytest_asyncio.fixture(scope="function")
async def client(db_engine, object_store, dispatcher):
    """HTTP test client with overridden DB dependency"""
    session_factory = async_sessionmaker(db_engine, class_=AsyncSession, expire_on_commit=False)

    async def override_get_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db_session] = override_get_db
    app.state.object_store = object_store
    app.state.dispatcher = dispatcher
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
    app.dependency_overrides.clear()
    app.state.object_store = None
    app.state.dispatcher = None


WORKSPACE_ID = str(uuid.uuid4())


@pytest.fixture
def test_user():
    return CurrentUser(id=str(uuid.uuid4()), workspace_id=WORKSPACE_ID, email="author@board.dev")


@pytest.fixture
def other_user():
    return CurrentUser(id=str(uuid.uuid4()), workspace_id=WORKSPACE_ID, email="teammate@board.dev")


@pytest.fixture
def third_user():
    return CurrentUser(id=str(uuid.uuid4()), workspace_id=WORKSPACE_ID, email="reviewer@board.dev")


@pytest_asyncio.fixture
async def test_project(db_session, test_user):
    """Create a project with the default field options"""
    project = Project(
        id=str(uuid.uuid4()),
        workspace_id=WORKSPACE_ID,
        name="Test Project",
        owner_id=test_user.id,
    )
    db_session.add(project)
    await db_session.commit()
    await CustomFieldCodec(db_session).seed_default_options(project.id)
    return project


@pytest.fixture
def attachment_factory(db_session, object_store, test_user):
    """Create TEMP attachments backed by a real file in the object store"""

    async def _create(entity_type=EntityType.BOARD, status=AttachmentStatus.TEMP, file_name="brief.pdf"):
        key = f"uploads/{uuid.uuid4()}/{file_name}"
        path = os.path.join(object_store.root, key)
        os.makedirs(os.path.dirname(path), exist_ok=True)
        with open(path, "wb") as f:
            f.write(b"attachment-bytes")
        attachment = Attachment(
            id=str(uuid.uuid4()),
            entity_type=entity_type,
            status=status,
            file_name=file_name,
            file_url=key,
            file_size=16,
            content_type="application/pdf",
            uploaded_by=test_user.id,
            workspace_id=WORKSPACE_ID,
        )
        db_session.add(attachment)
        await db_session.commit()
        return attachment

    return _create


def get_auth_headers(user: CurrentUser) -> dict:
    """Generate auth headers for a user"""
    token_data = {
        "sub": user.id,
        "email": user.email,
        "workspace_id": user.workspace_id,
    }
    token = AuthService.create_access_token(token_data)
    return {"Authorization": f"Bearer {token}"}
