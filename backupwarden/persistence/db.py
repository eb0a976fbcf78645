from __future__ import annotations

import logging
from typing import Any, Literal, Mapping, Protocol

import asyncpg
from sqlalchemy import text
from sqlalchemy.engine import make_url
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine
from sqlalchemy.pool import NullPool

from backupwarden.core.errors import ValidationQueryError


logger = logging.getLogger(__name__)

DbTarget = Literal["live", "validation"]


def with_database(database_url: str, name: str) -> str:
    # Point a connection URL at another database on the same server.
    parsed = make_url(database_url).set(database=name)
    return parsed.render_as_string(hide_password=False)


def libpq_url(database_url: str) -> str:
    # Strip async driver suffixes so command-line tools accept the URL.
    parsed = make_url(database_url)
    if "+" in parsed.drivername:
        parsed = parsed.set(drivername=parsed.drivername.split("+", 1)[0])
    return parsed.render_as_string(hide_password=False)


class CountSource(Protocol):
    # Scalar count queries against the live or validation database.
    async def count(self, target: DbTarget, statement: str, params: Mapping[str, Any] | None = None) -> int:
        ...


class SqlCountSource:
    """Run ``SELECT COUNT(*)`` style queries through SQLAlchemy async engines.

    Engines use ``NullPool`` so no idle connection to the validation database
    survives between attempts; ``DROP DATABASE`` fails while one is open.
    """

    def __init__(self, *, live_url: str, validation_url: str) -> None:
        self._urls: dict[DbTarget, str] = {"live": live_url, "validation": validation_url}
        self._engines: dict[DbTarget, AsyncEngine] = {}

    def _engine(self, target: DbTarget) -> AsyncEngine:
        engine = self._engines.get(target)
        if engine is None:
            engine = create_async_engine(self._urls[target], poolclass=NullPool)
            self._engines[target] = engine
        return engine

    async def count(self, target: DbTarget, statement: str, params: Mapping[str, Any] | None = None) -> int:
        try:
            async with self._engine(target).connect() as conn:
                value = (await conn.execute(text(statement), dict(params or {}))).scalar_one()
        except (SQLAlchemyError, OSError, asyncpg.PostgresError, asyncpg.InterfaceError) as exc:
            # Refused or dropped connections surface as raw driver/socket errors, not SQLAlchemyError.
            logger.warning("count_query_failed target=%s statement=%s", target, statement, exc_info=exc)
            raise ValidationQueryError(f"count query failed on {target} database: {exc}") from exc
        return int(value or 0)

    async def dispose(self) -> None:
        for engine in self._engines.values():
            await engine.dispose()
        self._engines.clear()
