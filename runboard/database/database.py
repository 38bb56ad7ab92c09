import uuid
from contextlib import asynccontextmanager
from typing import Optional

from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.pool import StaticPool

from runboard.config import Config
from runboard.database.models import Base, Category, Platform
from runboard.utils.logger import setup_logger

DEFAULT_CATEGORIES = ["Any%", "Free Play", "All Minikits", "100%"]
DEFAULT_PLATFORMS = ["PC", "PS2", "Xbox", "GameCube"]

class Database:
    def __init__(self, database_url: Optional[str] = None):
        self.logger = setup_logger(__name__)
        self.database_url = database_url or Config.DATABASE_URL
        self.engine = None
        self.async_session = None

    async def initialize(self, seed_defaults: bool = True):
        """Initialize the database connection and create tables"""
        self.logger.info("Initializing database...")

        # Convert sqlite URL to async if needed
        database_url = self.database_url
        if database_url.startswith('sqlite:///'):
            database_url = database_url.replace('sqlite:///', 'sqlite+aiosqlite:///')

        engine_kwargs = {'echo': Config.DEBUG, 'future': True}
        if ':memory:' in database_url:
            # In-memory SQLite lives on a single connection; share it across sessions
            engine_kwargs['poolclass'] = StaticPool
            engine_kwargs['connect_args'] = {'check_same_thread': False}

        self.engine = create_async_engine(database_url, **engine_kwargs)

        self.async_session = async_sessionmaker(
            self.engine,
            class_=AsyncSession,
            expire_on_commit=False
        )

        # Create all tables
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

        self.logger.info("Database initialized successfully")

        if seed_defaults:
            await self.initialize_default_data()

    @property
    def session_factory(self):
        return self.async_session

    async def initialize_default_data(self):
        """Initialize default categories and platforms when the registry is empty"""
        async with self.transaction() as session:
            result = await session.execute(select(func.count(Category.id)))
            if result.scalar() == 0:
                self.logger.info("Initializing default categories...")
                for order, name in enumerate(DEFAULT_CATEGORIES):
                    session.add(Category(id=uuid.uuid4().hex, name=name, board_kind="regular", order=order))
                self.logger.info(f"Added {len(DEFAULT_CATEGORIES)} default categories")

            result = await session.execute(select(func.count(Platform.id)))
            if result.scalar() == 0:
                self.logger.info("Initializing default platforms...")
                for order, name in enumerate(DEFAULT_PLATFORMS):
                    session.add(Platform(id=uuid.uuid4().hex, name=name, order=order))
                self.logger.info(f"Added {len(DEFAULT_PLATFORMS)} default platforms")

    @asynccontextmanager
    async def get_session(self):
        """Get a database session"""
        async with self.async_session() as session:
            try:
                yield session
            except Exception:
                await session.rollback()
                raise
            finally:
                await session.close()

    @asynccontextmanager
    async def transaction(self):
        """
        Create a transaction boundary for atomic operations.

        All operations within the context will be committed together on success,
        or rolled back together on failure.

        Usage:
            async with db.transaction() as session:
                session.add(run)
                session.add(player)
                # All operations commit together here

        Important: Exceptions must be allowed to propagate out of the context
        for rollback to occur.
        """
        async with self.async_session() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise
            finally:
                await session.close()

    async def close(self):
        """Close the database connection"""
        if self.engine:
            await self.engine.dispose()
            self.logger.info("Database connection closed")
