import sys
from pathlib import Path
from typing import Any, Mapping
from uuid import UUID

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine


def _configure_path() -> None:
    src_path = Path(__file__).resolve().parents[1] / "src"
    if src_path.exists():
        sys.path.insert(0, str(src_path))


_configure_path()

import loyalty_ledger.models  # noqa: E402,F401
from loyalty_ledger.app import create_app  # noqa: E402
from loyalty_ledger.db.base import Base  # noqa: E402
from loyalty_ledger.db.session import enable_sqlite_savepoints, get_session  # noqa: E402
from loyalty_ledger.models.user import User, UserRoleEnum  # noqa: E402
from loyalty_ledger.observability.points import get_points_store  # noqa: E402
from loyalty_ledger.observability.scheduler import get_scheduler_store  # noqa: E402


class RecordingNotificationSink:
    """Collects notifications instead of delivering them."""

    def __init__(self) -> None:
        self.sent: list[tuple[UUID, str, dict[str, Any]]] = []

    async def notify(self, user_id: UUID, kind: Any, payload: Mapping[str, Any]) -> None:
        self.sent.append((user_id, getattr(kind, "value", kind), dict(payload)))

    def kinds(self) -> list[str]:
        return [kind for _, kind, _ in self.sent]


@pytest.fixture(autouse=True)
def reset_observability():
    get_points_store().reset()
    get_scheduler_store().reset()
    yield
    get_points_store().reset()
    get_scheduler_store().reset()


@pytest_asyncio.fixture
async def session_factory():
    engine = enable_sqlite_savepoints(create_async_engine("sqlite+aiosqlite:///:memory:", future=True))
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    factory = async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)

    try:
        yield factory
    finally:
        await engine.dispose()


@pytest_asyncio.fixture
async def app_with_db(session_factory):
    app = create_app()

    async def override_get_session():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_session] = override_get_session

    try:
        yield app, session_factory
    finally:
        app.dependency_overrides.clear()


@pytest.fixture
def make_user(session_factory):
    counter = {"value": 0}

    async def _make_user(*, role: UserRoleEnum = UserRoleEnum.CLIENT, email: str | None = None) -> User:
        counter["value"] += 1
        async with session_factory() as session:
            user = User(
                email=email or f"member{counter['value']}@example.com",
                display_name=f"Member {counter['value']}",
                role=role.value,
            )
            session.add(user)
            await session.commit()
            return user

    return _make_user


@pytest.fixture
def notifications() -> RecordingNotificationSink:
    return RecordingNotificationSink()
