"""
Pytest configuration and fixtures for testing.

Provides an isolated SQLite database per test (via aiosqlite) holding the
merge tables plus one minimal table per registered dependent collection,
and factories for the rows the merge engine reads.
"""

import os
import uuid
from datetime import date, datetime, timedelta, timezone
from pathlib import Path
from typing import Any

import pytest
import pytest_asyncio
import sqlalchemy as sa
from dotenv import load_dotenv

# Settings are read when mpi is first imported, so the test environment
# must be loaded before the imports below
test_env_path = Path(__file__).parent.parent / ".env.test"
if test_env_path.exists():
    load_dotenv(test_env_path, override=True)
os.environ.setdefault("TESTING", "true")


from mpi.core.database import Base, create_session_factory  # noqa: E402
from mpi.models import MatchCandidate, MergeHistory, MPIIdentityRecord, PatientProfile  # noqa: E402
from mpi.services.merge.registry import MERGEABLE_COLLECTIONS  # noqa: E402

# Stand-ins for the platform's dependent tables: only the columns the engine touches
dependent_metadata = sa.MetaData()
DEPENDENT_TABLES = {
    collection.name: sa.Table(
        collection.name,
        dependent_metadata,
        sa.Column(collection.id_column, sa.String(36), primary_key=True),
        sa.Column(collection.ownership_key, sa.String(36), nullable=False),
        sa.Column("created_at", sa.DateTime, nullable=False),
    )
    for collection in MERGEABLE_COLLECTIONS
}


async def _create_engine(path: Path, with_dependents: bool = True):
    from sqlalchemy.ext.asyncio import create_async_engine

    engine = create_async_engine(f"sqlite+aiosqlite:///{path}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
        if with_dependents:
            await conn.run_sync(dependent_metadata.create_all)
    return engine


# =============================================================================
# Database Fixtures
# =============================================================================


@pytest_asyncio.fixture
async def db_engine(tmp_path):
    """Async engine over a fresh SQLite file with every table created."""
    engine = await _create_engine(tmp_path / "mpi.db")
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture
async def bare_db_engine(tmp_path):
    """Engine with the merge tables only; dependent collections are missing."""
    engine = await _create_engine(tmp_path / "mpi_bare.db", with_dependents=False)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return create_session_factory(db_engine)


@pytest.fixture
def bare_session_factory(bare_db_engine):
    return create_session_factory(bare_db_engine)


@pytest.fixture
def tenant_id() -> uuid.UUID:
    return uuid.uuid4()


# =============================================================================
# Row Factories
# =============================================================================


@pytest.fixture
def make_patient(session_factory, tenant_id):
    """Create a profile and its active identity record; returns the patient id."""

    async def _make(
        patient_id: uuid.UUID | None = None,
        with_identity: bool = True,
        **profile_fields: Any,
    ) -> uuid.UUID:
        patient_id = patient_id or uuid.uuid4()
        profile_fields.setdefault("first_name", "Jane")
        profile_fields.setdefault("last_name", "Doe")
        profile_fields.setdefault("date_of_birth", date(1980, 4, 2))
        async with session_factory() as session:
            session.add(PatientProfile(user_id=patient_id, tenant_id=tenant_id, **profile_fields))
            if with_identity:
                session.add(MPIIdentityRecord(patient_id=patient_id, tenant_id=tenant_id))
            await session.commit()
        return patient_id

    return _make


@pytest.fixture
def add_dependents(session_factory):
    """Insert rows owned by a patient into a dependent collection; returns their ids."""

    async def _add(collection: str, patient_id: uuid.UUID, count: int) -> list[str]:
        table = DEPENDENT_TABLES[collection]
        owner = next(c.name for c in table.columns if c.name not in ("id", "created_at"))
        base = datetime(2026, 1, 1)
        rows = [
            {"id": str(uuid.uuid4()), owner: str(patient_id), "created_at": base + timedelta(days=i)}
            for i in range(count)
        ]
        if rows:
            async with session_factory() as session:
                await session.execute(sa.insert(table), rows)
                await session.commit()
        return [row["id"] for row in rows]

    return _add


@pytest.fixture
def owned_ids(session_factory):
    """Return the ids of a collection's rows currently owned by a patient."""

    async def _owned(collection: str, patient_id: uuid.UUID) -> set[str]:
        table = DEPENDENT_TABLES[collection]
        owner = next(c for c in table.columns if c.name not in ("id", "created_at"))
        async with session_factory() as session:
            result = await session.execute(sa.select(table.c.id).where(owner == str(patient_id)))
            return set(result.scalars())

    return _owned


@pytest.fixture
def make_candidate(session_factory, tenant_id):
    async def _make(patient_a: uuid.UUID, patient_b: uuid.UUID, **fields: Any) -> uuid.UUID:
        fields.setdefault("overall_match_score", 92.5)
        fields.setdefault("status", "confirmed_match")
        candidate = MatchCandidate(
            tenant_id=tenant_id, patient_id_a=patient_a, patient_id_b=patient_b, **fields
        )
        async with session_factory() as session:
            session.add(candidate)
            await session.commit()
        return candidate.id

    return _make


@pytest.fixture
def make_history(session_factory, tenant_id):
    """Insert a ledger entry directly, bypassing the orchestrator."""

    async def _make(**fields: Any) -> MergeHistory:
        fields.setdefault("operation_type", "merge")
        fields.setdefault("surviving_patient_id", uuid.uuid4())
        fields.setdefault("deprecated_patient_id", uuid.uuid4())
        fields.setdefault("tenant_id", tenant_id)
        fields.setdefault("surviving_record_snapshot", {})
        fields.setdefault("deprecated_record_snapshot", {})
        fields.setdefault("merge_decision_reason", "Duplicate registration")
        fields.setdefault("performed_by", uuid.uuid4())
        fields.setdefault("performed_at", datetime.now(timezone.utc))
        entry = MergeHistory(**fields)
        async with session_factory() as session:
            session.add(entry)
            await session.commit()
        return entry

    return _make
