"""
Channel Sync Database
=====================

SQLAlchemy Core tables and the async engine/session wrapper.

SQLite (``sqlite+aiosqlite``) is used for local runs and tests; production
deployments point ``DATABASE_URL`` at PostgreSQL (``postgresql+asyncpg``).
"""

from contextlib import asynccontextmanager
from typing import AsyncIterator

import structlog
from sqlalchemy import (
    Boolean,
    Column,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    MetaData,
    String,
    Table,
    Text,
)
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from .config import settings

logger = structlog.get_logger(__name__)

metadata = MetaData()

# =============================================================================
# TABLES
# =============================================================================

channel_connections = Table(
    "channel_connections",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("property_id", String(64), nullable=False, index=True),
    Column("platform", String(32), nullable=False),
    Column("connection_type", String(16), nullable=False),
    Column("ical_url", Text),
    Column("api_key", Text),
    Column("account_id", String(128)),
    Column("external_property_id", String(128)),
    Column("auto_sync_enabled", Boolean, nullable=False, default=False),
    Column("sync_interval_minutes", Integer, nullable=False, default=60),
    Column("enabled", Boolean, nullable=False, default=True),
    Column("last_sync_at", DateTime(timezone=True)),
    Column("last_sync_status", String(16)),
    Column("last_sync_message", Text),
    Column("created_at", DateTime(timezone=True), nullable=False),
    Column("updated_at", DateTime(timezone=True), nullable=False),
)

channel_sync_logs = Table(
    "channel_sync_logs",
    metadata,
    Column("id", String(36), primary_key=True),
    Column(
        "connection_id",
        String(36),
        ForeignKey("channel_connections.id", ondelete="CASCADE"),
        nullable=False
    ),
    Column("property_id", String(64), nullable=False),
    Column("platform", String(32), nullable=False),
    Column("sync_type", String(16), nullable=False),
    Column("status", String(16), nullable=False),
    Column("added", Integer, nullable=False, default=0),
    Column("updated", Integer, nullable=False, default=0),
    Column("errors", Integer, nullable=False, default=0),
    Column("message", Text),
    Column("started_at", DateTime(timezone=True), nullable=False),
    Column("completed_at", DateTime(timezone=True), nullable=False),
    Index("ix_channel_sync_logs_connection_started", "connection_id", "started_at"),
)

bookings = Table(
    "bookings",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("property_id", String(64), nullable=False),
    Column("platform", String(32), nullable=False),
    Column("external_uid", String(255)),
    Column("start_date", Date, nullable=False),
    Column("end_date", Date, nullable=False),
    Column("status", String(16), nullable=False),
    Column("guest_name", String(255)),
    Index("ix_bookings_property_dates", "property_id", "start_date", "end_date"),
    Index("ix_bookings_external_uid", "property_id", "platform", "external_uid"),
)


# =============================================================================
# ENGINE
# =============================================================================

class Database:
    """Async engine plus a session factory that commits or rolls back."""

    def __init__(self, database_url: str = None, echo: bool = None):
        self.database_url = database_url or settings.DATABASE_URL
        engine_options = {}

        if self.database_url.startswith("sqlite"):
            engine_options["connect_args"] = {"check_same_thread": False}
            if ":memory:" in self.database_url:
                # One shared connection, otherwise every session sees an empty database
                engine_options["poolclass"] = StaticPool

        self.engine = create_async_engine(
            self.database_url,
            echo=settings.DATABASE_ECHO if echo is None else echo,
            **engine_options
        )
        self.session_factory = async_sessionmaker(
            bind=self.engine,
            class_=AsyncSession,
            expire_on_commit=False
        )

    async def create_tables(self) -> None:
        """Create all tables that do not exist yet."""
        async with self.engine.begin() as conn:
            await conn.run_sync(metadata.create_all)
        logger.info("Channel sync tables ready", database_url=self._redacted_url)

    @asynccontextmanager
    async def session(self) -> AsyncIterator[AsyncSession]:
        """Session that commits on success and rolls back on error."""
        async with self.session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    async def close(self) -> None:
        await self.engine.dispose()

    @property
    def _redacted_url(self) -> str:
        return self.engine.url.render_as_string(hide_password=True)
