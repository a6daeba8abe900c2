"""Shared fixtures: in-memory database, registry and a scripted execution service."""

from __future__ import annotations

from collections.abc import Callable

import httpx
import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from promptrun.auth import StaticCredentialProvider
from promptrun.config import Settings
from promptrun.db import Base, make_engine
from promptrun.services import CallRegistry, ExecutionClient, RunInitiator, RunTelemetry


@pytest.fixture
def settings():
    return Settings(
        environment="test",
        execution_base_url="http://execution.test",
        publishable_key="pk-test",
        telemetry_sample_rate=1.0,
    )


@pytest.fixture
def registry():
    return CallRegistry()


@pytest.fixture
def make_initiator(settings, registry) -> Callable[..., RunInitiator]:
    """Build an initiator whose transport is the given MockTransport handler."""
    def factory(handler, token: str | None = "test-token", credentials=None, **kwargs) -> RunInitiator:
        client = ExecutionClient(settings=settings, transport=httpx.MockTransport(handler))
        initiator = RunInitiator(
            client=client,
            credentials=credentials or StaticCredentialProvider(token),
            registry=registry,
            telemetry=RunTelemetry(settings),
            settings=settings,
            **kwargs,
        )
        return initiator

    return factory


@pytest_asyncio.fixture
async def engine(tmp_path):
    """Create an async SQLite engine on a per-test database file.

    A file gives every session its own connection, so concurrent sessions
    behave as they would against a server database.
    """
    eng = make_engine(f"sqlite+aiosqlite:///{(tmp_path / 'promptrun.db').as_posix()}")
    async with eng.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield eng
    await eng.dispose()


@pytest_asyncio.fixture
async def session_factory(engine):
    """Provide an async session factory."""
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
