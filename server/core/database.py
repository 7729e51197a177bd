"""Operation status store on SQLModel and SQLAlchemy async.

Implements the DataStore collaborator: one row per status key with the
record body as JSON. Every DataStore method fails soft; a storage error is
logged and reported as False, None, an empty list or zero.
"""

import logging
import time
from typing import Dict, Any, List, Optional
from sqlmodel import SQLModel, select
from sqlalchemy import delete
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from contextlib import asynccontextmanager

from core.config import Settings
from models.database import OperationStatusRecord
from core.logging import get_logger

logger = get_logger(__name__)


class Database:
    """Async status record store."""

    def __init__(self, settings: Settings):
        self.settings = settings
        self.engine = None
        self.async_session = None

    async def startup(self):
        """Initialize database connection and create tables."""
        try:
            logging.getLogger("aiosqlite").setLevel(logging.WARNING)
            logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
            logging.getLogger("sqlalchemy.pool").setLevel(logging.WARNING)

            engine_kwargs: Dict[str, Any] = {"echo": self.settings.database_echo}
            # SQLite uses a non-queue pool that rejects sizing arguments
            if not self.settings.database_url.startswith("sqlite"):
                engine_kwargs["pool_size"] = self.settings.database_pool_size
                engine_kwargs["max_overflow"] = self.settings.database_max_overflow

            self.engine = create_async_engine(self.settings.database_url, **engine_kwargs)

            self.async_session = async_sessionmaker(
                bind=self.engine,
                class_=AsyncSession,
                expire_on_commit=False
            )

            async with self.engine.begin() as conn:
                await conn.run_sync(SQLModel.metadata.create_all)

            logger.info("Database initialized successfully")

        except Exception as e:
            logger.error("Database startup failed", error=str(e))
            raise

    async def shutdown(self):
        """Close database connections."""
        if self.engine:
            await self.engine.dispose()
            logger.info("Database connections closed")

    @asynccontextmanager
    async def get_session(self):
        """Get async database session."""
        if not self.async_session:
            raise RuntimeError("Database not initialized")

        async with self.async_session() as session:
            try:
                yield session
            except Exception:
                await session.rollback()
                raise
            finally:
                await session.close()

    # ============================================================================
    # Operation Status (DataStore surface)
    # ============================================================================

    async def persist(self, key: str, record: Dict[str, Any]) -> bool:
        """Insert or replace the record stored under key."""
        try:
            async with self.get_session() as session:
                stmt = select(OperationStatusRecord).where(OperationStatusRecord.key == key)
                result = await session.execute(stmt)
                existing = result.scalar_one_or_none()

                if existing:
                    existing.data = record
                    existing.status = record.get("status", existing.status)
                    existing.updated_at = time.time()
                else:
                    session.add(OperationStatusRecord(
                        key=key,
                        operation_type=record.get("type", ""),
                        user_id=record.get("user_id"),
                        status=record.get("status", "pending"),
                        data=record,
                    ))

                await session.commit()
                return True

        except Exception as e:
            logger.error("Failed to persist record", key=key, error=str(e))
            return False

    async def fetch(self, key: str) -> Optional[Dict[str, Any]]:
        """Get the record stored under key."""
        try:
            async with self.get_session() as session:
                stmt = select(OperationStatusRecord).where(OperationStatusRecord.key == key)
                result = await session.execute(stmt)
                entry = result.scalar_one_or_none()
                return dict(entry.data) if entry else None

        except Exception as e:
            logger.error("Failed to fetch record", key=key, error=str(e))
            return None

    async def list_user_records(self, user_id: str, limit: int = 50) -> List[Dict[str, Any]]:
        """Most recently updated records for a user."""
        try:
            async with self.get_session() as session:
                stmt = (
                    select(OperationStatusRecord)
                    .where(OperationStatusRecord.user_id == user_id)
                    .order_by(OperationStatusRecord.updated_at.desc())
                    .limit(limit)
                )
                result = await session.execute(stmt)
                return [dict(r.data) for r in result.scalars().all()]

        except Exception as e:
            logger.error("Failed to list records", user_id=user_id, error=str(e))
            return []

    async def cleanup_old_records(self, max_age_hours: int = 24) -> int:
        """Delete records not updated within max_age_hours."""
        try:
            cutoff = time.time() - max_age_hours * 3600
            async with self.get_session() as session:
                stmt = delete(OperationStatusRecord).where(OperationStatusRecord.updated_at < cutoff)
                result = await session.execute(stmt)
                await session.commit()
                deleted = result.rowcount or 0
                if deleted:
                    logger.info("Cleaned up old operation records", count=deleted)
                return deleted

        except Exception as e:
            logger.error("Failed to cleanup old records", error=str(e))
            return 0
