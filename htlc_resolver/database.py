"""
Database persistence for swap state.

SQLite through SQLAlchemy's async engine is plenty for a single
resolver. Each row keeps a few normalized columns for querying plus the
complete SwapState as JSON, and the used-secrets table relies on its
primary key so reserve-if-absent is atomic even across processes.
Swap rows carry a revision; an update only lands on the revision it was
read at, so a CLI process and the watch daemon cannot overwrite each
other's changes.
"""

from datetime import datetime, timezone

import structlog
from sqlalchemy import Column, DateTime, Index, Integer, String, Text, delete, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import declarative_base, sessionmaker

from .config import config
from .errors import StaleState
from .models import SwapState

logger = structlog.get_logger()
Base = declarative_base()


class SwapRecord(Base):
    """Live swap state: normalized fields for querying plus the JSON blob."""

    __tablename__ = "swap_states"

    order_id = Column(String, primary_key=True)
    parent_id = Column(String, nullable=True, index=True)
    status = Column(String, nullable=False)
    hashlock = Column(String, nullable=False)
    expires_at = Column(DateTime, nullable=False)
    updated_at = Column(DateTime, nullable=False)
    revision = Column(Integer, nullable=False, default=0)
    full_state_json = Column(Text, nullable=False)

    __table_args__ = (
        Index("idx_swap_status", "status"),
        Index("idx_swap_expiry", "expires_at"),
    )


class UsedSecretRecord(Base):
    """Hashlocks of every secret ever reserved; the PK enforces uniqueness."""

    __tablename__ = "used_secrets"

    hashlock = Column(String, primary_key=True)
    reserved_at = Column(DateTime, nullable=False)


class ArchivedSwapRecord(Base):
    """Terminal swaps moved out of the live table."""

    __tablename__ = "archived_swaps"

    order_id = Column(String, primary_key=True)
    status = Column(String, nullable=False)
    archived_at = Column(DateTime, nullable=False)
    full_state_json = Column(Text, nullable=False)


class SqlSwapStore:
    """
    SwapStore backed by SQLAlchemy.

    Handles storage, retrieval and archival of swap records with async
    sessions so the watcher tasks never block on disk I/O.
    """

    def __init__(self, database_url: str | None = None):
        """Initialize database connection."""
        self.engine = create_async_engine(
            database_url or config.database_url, echo=False, pool_pre_ping=True
        )
        self.async_session = sessionmaker(
            self.engine, class_=AsyncSession, expire_on_commit=False
        )

    async def init(self):
        """Initialize database schema."""
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info("Database initialized")

    async def close(self):
        """Close database connection."""
        await self.engine.dispose()

    async def put(self, state: SwapState) -> None:
        """
        Save or update a swap record.

        The write only lands if the stored revision still matches the one
        `state` was read at; on success `state.revision` is bumped.

        Raises:
            StaleState: another writer stored the swap first
        """
        revision = state.revision + 1
        values = dict(
            parent_id=state.parent_id,
            status=state.status.value,
            hashlock=state.hashlock,
            expires_at=state.expires_at,
            updated_at=state.updated_at,
            revision=revision,
            full_state_json=state.model_copy(update={"revision": revision}).model_dump_json(),
        )
        async with self.async_session() as session:
            if state.revision == 0:
                session.add(SwapRecord(order_id=state.order_id, **values))
                try:
                    await session.commit()
                except IntegrityError:
                    await session.rollback()
                    raise StaleState("swap already stored", order_id=state.order_id)
            else:
                result = await session.execute(
                    update(SwapRecord)
                    .where(SwapRecord.order_id == state.order_id, SwapRecord.revision == state.revision)
                    .values(**values)
                )
                await session.commit()
                if result.rowcount != 1:
                    raise StaleState(
                        "swap was written since it was read",
                        order_id=state.order_id,
                        revision=state.revision,
                    )
        state.revision = revision

    async def get(self, order_id: str) -> SwapState | None:
        """Get a swap by order id."""
        async with self.async_session() as session:
            result = await session.get(SwapRecord, order_id)
            if result:
                return SwapState.model_validate_json(result.full_state_json)
            return None

    async def delete(self, order_id: str) -> None:
        async with self.async_session() as session:
            await session.execute(delete(SwapRecord).where(SwapRecord.order_id == order_id))
            await session.commit()

    async def reserve(self, hashlock: bytes) -> bool:
        """Insert into used_secrets; a duplicate key means the secret was used."""
        async with self.async_session() as session:
            session.add(
                UsedSecretRecord(
                    hashlock=hashlock.hex(), reserved_at=datetime.now(timezone.utc)
                )
            )
            try:
                await session.commit()
            except IntegrityError:
                await session.rollback()
                return False
            return True

    async def list(self, statuses: list[str] | None = None) -> list[SwapState]:
        """Get swaps, optionally filtered by status, newest update first."""
        async with self.async_session() as session:
            query = select(SwapRecord.full_state_json).order_by(SwapRecord.updated_at.desc())
            if statuses:
                query = query.where(SwapRecord.status.in_(statuses))
            result = await session.execute(query)
            return [SwapState.model_validate_json(row[0]) for row in result]

    async def archive(self, order_id: str) -> None:
        """Move a swap into the archive table in one transaction."""
        async with self.async_session() as session:
            record = await session.get(SwapRecord, order_id)
            if record is None:
                return
            await session.merge(
                ArchivedSwapRecord(
                    order_id=record.order_id,
                    status=record.status,
                    archived_at=datetime.now(timezone.utc),
                    full_state_json=record.full_state_json,
                )
            )
            await session.delete(record)
            await session.commit()
        logger.info("Archived swap", order_id=order_id)

    async def get_archived(self, order_id: str) -> SwapState | None:
        async with self.async_session() as session:
            result = await session.get(ArchivedSwapRecord, order_id)
            if result:
                return SwapState.model_validate_json(result.full_state_json)
            return None
