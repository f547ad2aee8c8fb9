"""
Collection migrator: moves dependent-record ownership between identities.

Every registered collection is migrated on its own session and committed on
its own. A failure in one collection is recorded and the next collection is
still attempted; collections that already succeeded are left in place.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Sequence
from typing import Any
from uuid import UUID

from pydantic_core import to_jsonable_python
from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from mpi.observability import collection_migrations_total
from mpi.schemas.merge import DataMigration, MigrationAction, MigrationStatus
from mpi.services.merge.registry import MERGEABLE_COLLECTIONS, MergeableCollection, get_collection

logger = logging.getLogger(__name__)

# Ids bound per UPDATE statement; asyncpg caps a statement at 32767 parameters
UPDATE_CHUNK_SIZE = 5000


class CollectionMigrator:
    """
    Reassigns dependent records from a deprecated identity to a survivor.

    Example:
        migrator = CollectionMigrator(AsyncSessionLocal)
        migrations = await migrator.migrate(surviving_id, deprecated_id)
        failed = [m for m in migrations if m.status == MigrationStatus.FAILED]
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        collections: Sequence[MergeableCollection] = MERGEABLE_COLLECTIONS,
        chunk_size: int = UPDATE_CHUNK_SIZE,
    ):
        self._session_factory = session_factory
        self.collections = tuple(collections)
        self.chunk_size = chunk_size

    async def migrate(self, surviving_id: UUID, deprecated_id: UUID) -> list[DataMigration]:
        """
        Reassign every registered collection, one at a time.

        Args:
            surviving_id: Identity receiving the records
            deprecated_id: Identity currently owning them

        Returns:
            One DataMigration per registered collection, in registry order
        """
        migrations = []
        for collection in self.collections:
            migration = await self._reassign(collection, surviving_id, deprecated_id)
            collection_migrations_total.labels(
                operation="reassign",
                collection=collection.name,
                status=migration.status.value,
            ).inc()
            migrations.append(migration)
        return migrations

    async def _reassign(
        self,
        collection: MergeableCollection,
        surviving_id: UUID,
        deprecated_id: UUID,
    ) -> DataMigration:
        table = collection.table()
        owner = table.c[collection.ownership_key]
        record_id = table.c[collection.id_column]
        ids: list[Any] = []

        try:
            async with self._session_factory() as session:
                result = await session.execute(
                    select(record_id).where(owner == str(deprecated_id))
                )
                raw_ids = list(result.scalars())
                ids = to_jsonable_python(raw_ids)

                if not raw_ids:
                    return DataMigration(
                        collection=collection.name,
                        ids=[],
                        action=MigrationAction.REASSIGN,
                        status=MigrationStatus.COMPLETED,
                    )

                await self._set_owner(session, collection, raw_ids, surviving_id)
                await session.commit()
        except SQLAlchemyError as e:
            logger.warning(
                f"Reassignment of {collection.name} failed",
                extra={
                    "collection": collection.name,
                    "deprecated_patient_id": str(deprecated_id),
                    "error": str(e),
                },
            )
            return DataMigration(
                collection=collection.name,
                ids=ids,
                action=MigrationAction.REASSIGN,
                status=MigrationStatus.FAILED,
                error=str(e),
            )

        logger.debug(f"Reassigned {len(ids)} {collection.name} records to {surviving_id}")
        return DataMigration(
            collection=collection.name,
            ids=ids,
            action=MigrationAction.REASSIGN,
            status=MigrationStatus.COMPLETED,
        )

    async def rollback_migrations(
        self,
        migrations: Iterable[DataMigration | dict[str, Any]],
        deprecated_id: UUID,
    ) -> list[DataMigration]:
        """
        Point previously migrated records back at the deprecated identity.

        Only completed migrations that moved rows are replayed, and only for
        collections still registered. Each replay is recorded as rolled_back
        or failed independently.

        Args:
            migrations: Outcomes recorded by the original merge
            deprecated_id: Identity to hand the records back to

        Returns:
            One DataMigration per replayed collection
        """
        outcomes = []
        for original in migrations:
            migration = DataMigration.model_validate(original)
            if not migration.is_replayable:
                continue
            collection = get_collection(migration.collection)
            if collection is None:
                logger.warning(
                    f"Skipping rollback of unregistered collection {migration.collection}"
                )
                continue

            outcome = await self._restore(collection, migration.ids, deprecated_id)
            collection_migrations_total.labels(
                operation="rollback",
                collection=collection.name,
                status=outcome.status.value,
            ).inc()
            outcomes.append(outcome)
        return outcomes

    async def _restore(
        self,
        collection: MergeableCollection,
        ids: list[Any],
        deprecated_id: UUID,
    ) -> DataMigration:
        try:
            async with self._session_factory() as session:
                await self._set_owner(session, collection, ids, deprecated_id)
                await session.commit()
        except SQLAlchemyError as e:
            logger.warning(
                f"Rollback of {collection.name} failed",
                extra={"collection": collection.name, "error": str(e)},
            )
            return DataMigration(
                collection=collection.name,
                ids=ids,
                action=MigrationAction.REASSIGN,
                status=MigrationStatus.FAILED,
                error=str(e),
            )

        return DataMigration(
            collection=collection.name,
            ids=ids,
            action=MigrationAction.REASSIGN,
            status=MigrationStatus.ROLLED_BACK,
        )

    async def _set_owner(
        self,
        session: AsyncSession,
        collection: MergeableCollection,
        ids: list[Any],
        owner_id: UUID,
    ) -> None:
        """Point the given rows at a new owner; chunks share the caller's transaction."""
        table = collection.table()
        record_id = table.c[collection.id_column]
        for start in range(0, len(ids), self.chunk_size):
            await session.execute(
                update(table)
                .where(record_id.in_(ids[start:start + self.chunk_size]))
                .values({collection.ownership_key: str(owner_id)})
            )
