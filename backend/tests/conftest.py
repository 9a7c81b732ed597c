# tests/conftest.py — Shared test fixtures
import os
import uuid

import pytest
import pytest_asyncio
from httpx import AsyncClient, ASGITransport
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker

# Use SQLite for tests
TEST_DB_URL = "sqlite+aiosqlite:///./test.db"
os.environ["DATABASE_URL"] = TEST_DB_URL
os.environ["JWT_SECRET_KEY"] = "test-secret-key-for-unit-tests-only-min-32-chars"
os.environ["ENVIRONMENT"] = "test"

from models import Base, User, Organisation, Vessel, VesselComponent, UserRole
from auth import AuthService, CurrentUser
from database import get_db_session
from workflow_engine import WorkflowEngine
from main import app


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
async def session_factory(db_engine):
    return async_sessionmaker(db_engine, class_=AsyncSession, expire_on_commit=False, autoflush=False)


@pytest_asyncio.fixture(scope="function")
async def db_session(session_factory):
    async with session_factory() as session:
        yield session


@pytest_asyncio.fixture(scope="function")
async def client(session_factory):
    """HTTP test client with overridden DB dependency"""
    async def override_get_db():
        async with session_factory() as session:
            yield session

    store = app.state.collaboration.store
    previous_factory = store.session_factory
    store.session_factory = session_factory
    app.dependency_overrides[get_db_session] = override_get_db
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
    app.dependency_overrides.clear()
    store.session_factory = previous_factory


async def _make_org(db_session, name: str, slug: str) -> Organisation:
    org = Organisation(id=str(uuid.uuid4()), name=name, slug=slug, is_active=True, settings={})
    db_session.add(org)
    await db_session.commit()
    await db_session.refresh(org)
    return org


async def _make_user(db_session, org: Organisation, email: str, name: str, role: UserRole) -> User:
    user = User(
        id=str(uuid.uuid4()),
        email=email,
        display_name=name,
        password_hash=AuthService.hash_password("TestPassword123!"),
        organisation_id=org.id,
        role=role,
        is_active=True,
    )
    db_session.add(user)
    await db_session.commit()
    await db_session.refresh(user)
    return user


@pytest_asyncio.fixture
async def test_org(db_session):
    return await _make_org(db_session, "Harbour Marine Services", "harbour-marine")


@pytest_asyncio.fixture
async def other_org(db_session):
    """A second tenant, for cross-organisation checks"""
    return await _make_org(db_session, "Blue Water Divers", "blue-water")


@pytest_asyncio.fixture
async def admin_user(db_session, test_org):
    return await _make_user(db_session, test_org, "admin@berthwise.test", "Ada Admin", UserRole.ORG_ADMIN)


@pytest_asyncio.fixture
async def manager_user(db_session, test_org):
    return await _make_user(db_session, test_org, "manager@berthwise.test", "Morgan Manager", UserRole.MANAGER)


@pytest_asyncio.fixture
async def inspector_user(db_session, test_org):
    return await _make_user(db_session, test_org, "inspector@berthwise.test", "Ira Inspector", UserRole.INSPECTOR)


@pytest_asyncio.fixture
async def viewer_user(db_session, test_org):
    return await _make_user(db_session, test_org, "viewer@berthwise.test", "Vic Viewer", UserRole.VIEWER)


@pytest_asyncio.fixture
async def outsider_user(db_session, other_org):
    """Inspector from another organisation with no assignment"""
    return await _make_user(db_session, other_org, "diver@bluewater.test", "Dee Diver", UserRole.INSPECTOR)


@pytest_asyncio.fixture
async def test_vessel(db_session, test_org):
    vessel = Vessel(
        id=str(uuid.uuid4()),
        organisation_id=test_org.id,
        name="MV Kestrel",
        vessel_type="Bulk Carrier",
        imo_number="9876543",
        home_port="Fremantle",
    )
    db_session.add(vessel)
    for idx, (name, category) in enumerate([
        ("Bow thruster tunnel", "Niche area"),
        ("Sea chest (port)", "Niche area"),
        ("Flat bottom", "Hull"),
    ]):
        db_session.add(VesselComponent(
            vessel_id=vessel.id, name=name, category=category, sort_order=idx,
        ))
    await db_session.commit()
    await db_session.refresh(vessel)
    return vessel


@pytest_asyncio.fixture
async def bare_vessel(db_session, test_org):
    """Vessel without a general arrangement"""
    vessel = Vessel(id=str(uuid.uuid4()), organisation_id=test_org.id, name="MV Empty")
    db_session.add(vessel)
    await db_session.commit()
    return vessel


@pytest_asyncio.fixture
async def inspection_workflow(db_session):
    """Capture → review → report, one required task per step"""
    return await WorkflowEngine.create_template(db_session, {
        "name": "Biofouling inspection",
        "steps": [
            {"name": "Capture", "type": "DATA_CAPTURE", "order": 1,
             "tasks": [{"name": "Record hull condition", "task_type": "INSPECTION_RECORD"}]},
            {"name": "Review", "type": "REVIEW", "order": 2,
             "tasks": [{"name": "Supervisor sign-off", "task_type": "APPROVAL"}]},
            {"name": "Report", "type": "REPORT_GENERATION", "order": 3, "auto_advance": True,
             "tasks": [{"name": "Generate report", "task_type": "FILE_UPLOAD"}]},
        ],
    })


def as_current_user(user: User) -> CurrentUser:
    role = user.role.value if isinstance(user.role, UserRole) else user.role
    return CurrentUser(
        id=user.id,
        email=user.email,
        display_name=user.display_name,
        organisation_id=user.organisation_id,
        role=role,
        is_active=True,
        permissions=AuthService.get_user_permissions(role),
    )


def get_auth_headers(user: User) -> dict:
    """Generate auth headers for a user"""
    token_data = {
        "sub": user.id,
        "email": user.email,
        "organisation_id": user.organisation_id,
        "role": user.role.value if isinstance(user.role, UserRole) else user.role,
    }
    token = AuthService.create_access_token(token_data)
    return {"Authorization": f"Bearer {token}"}
