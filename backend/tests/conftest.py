import asyncio
import os
from collections.abc import Generator
from typing import Dict

import pytest

# Keep pytest output high-signal by disabling outbound Sentry capture and SMTP in tests.
os.environ["SENTRY_DSN"] = ""
os.environ["SMTP_ENABLED"] = "false"
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")

from fastapi.testclient import TestClient  # noqa: E402
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine  # noqa: E402

from optout.api.v1 import newsletter as newsletter_api  # noqa: E402
from optout.core import metrics  # noqa: E402
from optout.db.base import Base  # noqa: E402
from optout.db.session import get_session  # noqa: E402
from optout.main import app  # noqa: E402
from optout.models import Company, User  # noqa: E402


@pytest.fixture
def session_factory() -> Generator[async_sessionmaker, None, None]:
    engine = create_async_engine("sqlite+aiosqlite:///:memory:", future=True)
    SessionLocal = async_sessionmaker(engine, expire_on_commit=False)

    async def init_models() -> None:
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    asyncio.run(init_models())
    yield SessionLocal
    asyncio.run(engine.dispose())


@pytest.fixture
def test_app(session_factory: async_sessionmaker) -> Generator[Dict[str, object], None, None]:
    async def override_get_session():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_session] = override_get_session
    client = TestClient(app)
    yield {"client": client, "session_factory": session_factory}
    client.close()
    app.dependency_overrides.clear()


@pytest.fixture
def seed_account(session_factory: async_sessionmaker):
    """Create a user (optionally with a company) and return their ids."""

    def _seed_account(email: str, *, company_name: str | None = None) -> Dict[str, object]:
        return asyncio.run(_seed(email, company_name))

    async def _seed(email: str, company_name: str | None) -> Dict[str, object]:
        async with session_factory() as session:
            company = Company(name=company_name) if company_name else None
            user = User(email=email, name="Test User", company=company)
            session.add(user)
            await session.commit()
            return {"user_id": user.id, "company_id": company.id if company else None}

    return _seed_account


@pytest.fixture(autouse=True)
def _reset_process_state() -> Generator[None, None, None]:
    # Rate-limit buckets and metrics counters are process-global and can leak across tests.
    limiters = (
        newsletter_api.unsubscribe_rate_limit,
        newsletter_api.resubscribe_rate_limit,
        newsletter_api.verify_rate_limit,
    )
    for dep in limiters:
        dep.buckets.clear()
    metrics.reset()
    yield
    for dep in limiters:
        dep.buckets.clear()
    metrics.reset()
