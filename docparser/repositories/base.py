# docparser/repositories/base.py
from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, TypeVar

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import async_sessionmaker

from docparser.shared.errors import StorageError

T = TypeVar("T")

logger = logging.getLogger(__name__)


class SqlRepository:
    """Session factory + per-call timeout shared by every store."""

    def __init__(self, session_maker: async_sessionmaker, timeout: float = 5.0):
        self._session_maker = session_maker
        self._timeout = timeout

    async def _guard(self, op: str, coro: Awaitable[T]) -> T:
        try:
            return await asyncio.wait_for(coro, self._timeout)
        except asyncio.TimeoutError as e:
            logger.error("repository %s timed out after %.1fs", op, self._timeout)
            raise StorageError(f"{op} timed out") from e
        except SQLAlchemyError as e:
            logger.error("repository %s failed: %s", op, e)
            raise StorageError(f"{op} failed") from e
