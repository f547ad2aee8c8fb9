"""
Database dependencies for FastAPI dependency injection.

The merge engine manages its own sessions, one per data-store round trip,
so routes receive the session factory (or an orchestrator built on it)
rather than a request-scoped session. Tests override
``get_session_factory`` to point the whole API at another database.
"""

import logging
from typing import Annotated

from fastapi import Depends
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from mpi.core.database import AsyncSessionLocal
from mpi.services.merge import MergeOrchestrator

logger = logging.getLogger(__name__)


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """Provide the application's session factory."""
    return AsyncSessionLocal


def get_merge_orchestrator(
    session_factory: Annotated[async_sessionmaker[AsyncSession], Depends(get_session_factory)],
) -> MergeOrchestrator:
    """
    Provide a merge orchestrator bound to the session factory.

    Orchestrators are cheap; identity locks are shared process-wide, so a
    fresh instance per request still serializes operations on one identity.
    """
    return MergeOrchestrator(session_factory)


Orchestrator = Annotated[MergeOrchestrator, Depends(get_merge_orchestrator)]
