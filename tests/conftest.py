"""Pytest configuration and fixtures."""

from __future__ import annotations

from collections.abc import Callable
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from trove_monitor.chain.client import CallResult, ContractCall, RPCError
from trove_monitor.storage.database import DatabaseManager
from trove_monitor.storage.models import Base

Handler = Any  # a value, an exception, or Callable[[ContractCall], value]


def _resolve(handlers: dict[str, Handler], call: ContractCall) -> Any:
    handler = handlers[call.abi["name"]]
    return handler(call) if callable(handler) and not isinstance(handler, type) else handler


def make_chain_reader(handlers: dict[str, Handler], *, latest_timestamp: int = 1_700_000_100) -> MagicMock:
    """A ChainReader double whose calls are answered by function name.

    A handler result that is an exception is raised from `call()` (as
    RPCError) and reported as a failed sub-call from `multicall()`.
    """
    reader = MagicMock()
    reader.calls = []

    async def call(c: ContractCall, **_: Any) -> Any:
        reader.calls.append(c)
        value = _resolve(handlers, c)
        if isinstance(value, Exception):
            raise RPCError(str(value))
        return value

    async def multicall(calls: list[ContractCall], **_: Any) -> list[CallResult]:
        results = []
        for c in calls:
            reader.calls.append(c)
            if c.abi["name"] not in handlers:
                results.append(CallResult(success=False, error="no handler"))
                continue
            value = _resolve(handlers, c)
            if isinstance(value, Exception):
                results.append(CallResult(success=False, error=str(value)))
            else:
                results.append(CallResult(success=True, value=value))
        return results

    reader.call = AsyncMock(side_effect=call)
    reader.multicall = AsyncMock(side_effect=multicall)
    reader.get_latest_block = AsyncMock(
        return_value={"number": 5_000_500, "hash": None, "timestamp": latest_timestamp}
    )
    return reader


@pytest.fixture
def chain_reader() -> Callable[..., MagicMock]:
    """Factory for handler-driven ChainReader doubles."""
    return make_chain_reader


@pytest.fixture
async def async_engine():
    """Create an async SQLite engine for testing."""
    engine = create_async_engine("sqlite+aiosqlite:///:memory:", echo=False)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
async def async_session(async_engine) -> AsyncSession:
    """Create an async session for testing."""
    session_factory = async_sessionmaker(bind=async_engine, expire_on_commit=False)
    async with session_factory() as session:
        yield session


@pytest.fixture
async def db_manager(tmp_path) -> DatabaseManager:
    """DatabaseManager over a file-backed SQLite database (shared across sessions)."""
    manager = DatabaseManager(f"sqlite+aiosqlite:///{tmp_path / 'monitor.db'}")
    await manager.init_schema_async()
    yield manager
    await manager.dispose_async()
