"""
Shared fixtures for the test suite.

The database URL must be set before anything imports jobtracker.database,
so every test runs against a throwaway SQLite file.
"""

import os
import tempfile

_db_dir = tempfile.mkdtemp(prefix="jobtracker-tests-")
os.environ["DATABASE_URL"] = f"sqlite:///{_db_dir}/test.db"
os.environ["SCHEDULER_AUTOSTART"] = "false"
os.environ.setdefault("OPENAI_API_KEY", "test-key")

import pytest


class Seeder:
    """Inserts rows directly through the ORM."""

    def __init__(self, session_factory):
        self.session_factory = session_factory

    async def _add(self, obj):
        async with self.session_factory() as db:
            db.add(obj)
            await db.commit()
            await db.refresh(obj)
            return obj

    async def company(self, **fields):
        from jobtracker.models import Company

        fields.setdefault("name", "Acme")
        fields.setdefault("careers_url", "https://boards.greenhouse.io/acme")
        fields.setdefault("platform", "greenhouse")
        fields.setdefault("is_active", True)
        return await self._add(Company(**fields))

    async def job(self, company_id: int, **fields):
        from jobtracker.models import Job

        fields.setdefault("title", "Backend Engineer")
        fields.setdefault("url", f"https://example.com/jobs/{fields.get('external_id', 'x')}")
        fields.setdefault("status", "new")
        return await self._add(Job(company_id=company_id, **fields))

    async def profile(self, **fields):
        from jobtracker.models import Profile

        fields.setdefault("name", "Test Candidate")
        fields.setdefault("summary", "Backend engineer with 6 years of Python")
        fields.setdefault("skills", [{"name": "Python", "proficiency": 5, "category": "backend"}])
        fields.setdefault("experience", [{"title": "Backend Engineer", "company": "Initech"}])
        return await self._add(Profile(id="default", **fields))

    async def setting(self, key: str, value: str):
        from jobtracker.models import Setting

        return await self._add(Setting(key=key, value=value))


@pytest.fixture
async def db():
    """Fresh schema for each test."""
    import jobtracker.models  # noqa: F401
    from jobtracker.database import Base, engine
    from jobtracker.services.matcher import reset_matcher_circuit_breaker

    reset_matcher_circuit_breaker()
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def seed(db):
    from jobtracker.database import async_session

    return Seeder(async_session)
