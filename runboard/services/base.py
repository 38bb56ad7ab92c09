"""
Base service class for runboard services.

Provides the shared document store handle, async database session management
and retry logic for transient store failures.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Callable, Any
from sqlalchemy.ext.asyncio import AsyncSession

from runboard.utils.exceptions import StoreError, StorePermissionError

logger = logging.getLogger(__name__)

class BaseService:
    """Base class for all services with store access and async session management."""

    def __init__(self, store):
        """
        Initialize base service with the document store.

        Args:
            store: DocumentStore wrapping the initialized Database
        """
        self.store = store
        self.session_factory = store.db.session_factory

    @asynccontextmanager
    async def get_session(self) -> AsyncGenerator[AsyncSession, None]:
        """Provide a transactional scope for async database operations."""
        session = self.session_factory()
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
        finally:
            await session.close()

    async def execute_with_retry(self, func: Callable, max_retries: int = 3) -> Any:
        """Execute a function with automatic retry on transient store errors."""
        for attempt in range(max_retries):
            try:
                return await func()
            except StorePermissionError:
                raise
            except StoreError as e:
                if attempt == max_retries - 1:
                    raise
                logger.warning(f"Retry attempt {attempt + 1} for {func.__name__}: {e}")
                await asyncio.sleep(0.1 * (2 ** attempt))  # Exponential backoff
