"""Thread repository."""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Protocol, runtime_checkable

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from promptrun.core.logging import get_logger

from ..db.models import Thread
from ..db.types import GUID

logger = get_logger(__name__)


@runtime_checkable
class ThreadRepository(Protocol):
    async def get_by_id(self, id: str) -> Thread | None: ...
    async def get_active(self, root_prompt_id: str, owner_id: str) -> Thread | None: ...
    async def list_for_family(self, root_prompt_id: str, owner_id: str, limit: int = 100) -> list[Thread]: ...
    async def replace_active(self, root_prompt_id: str, owner_id: str, title: str | None = None) -> Thread: ...
    async def get_or_create_active(self, root_prompt_id: str, owner_id: str, title: str | None = None) -> Thread: ...
    async def activate(self, id: str) -> Thread | None: ...
    async def deactivate(self, id: str) -> bool: ...
    async def touch(self, id: str, at: datetime | None = None) -> bool: ...


def _family(root_prompt_id: str, owner_id: str):
    return (Thread.root_prompt_id == root_prompt_id, Thread.owner_id == owner_id)


class SQLAlchemyThreadRepository:
    """Each method runs in its own transaction.

    The one-active-thread rule is kept by deactivating before inserting or
    activating inside the same transaction; the partial unique index on
    active rows rejects anything that slips past.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._sf = session_factory

    async def get_by_id(self, id: str) -> Thread | None:
        async with self._sf() as session:
            return await session.get(Thread, id)

    async def get_active(self, root_prompt_id: str, owner_id: str) -> Thread | None:
        async with self._sf() as session:
            return await self._select_active(session, root_prompt_id, owner_id)

    async def list_for_family(self, root_prompt_id: str, owner_id: str, limit: int = 100) -> list[Thread]:
        async with self._sf() as session:
            result = await session.execute(
                select(Thread)
                .where(*_family(root_prompt_id, owner_id))
                .order_by(Thread.is_active.desc(), Thread.created_at.desc())
                .limit(limit)
            )
            return list(result.scalars().all())

    async def replace_active(self, root_prompt_id: str, owner_id: str, title: str | None = None) -> Thread:
        async with self._sf() as session:
            async with session.begin():
                await self._deactivate_family(session, root_prompt_id, owner_id)
                thread = Thread(
                    id=GUID.new(),
                    root_prompt_id=root_prompt_id,
                    owner_id=owner_id,
                    title=title,
                    is_active=True,
                )
                session.add(thread)
            return thread

    async def get_or_create_active(self, root_prompt_id: str, owner_id: str, title: str | None = None) -> Thread:
        try:
            async with self._sf() as session:
                async with session.begin():
                    existing = await self._select_active(session, root_prompt_id, owner_id)
                    if existing is not None:
                        return existing
                    thread = Thread(
                        id=GUID.new(),
                        root_prompt_id=root_prompt_id,
                        owner_id=owner_id,
                        title=title,
                        is_active=True,
                    )
                    session.add(thread)
                return thread
        except IntegrityError:
            # A concurrent writer created the active thread first
            logger.info(
                "Active thread created concurrently, reusing it",
                data={"root_prompt_id": root_prompt_id, "owner_id": owner_id},
            )
            existing = await self.get_active(root_prompt_id, owner_id)
            if existing is None:
                raise
            return existing

    async def activate(self, id: str) -> Thread | None:
        async with self._sf() as session:
            async with session.begin():
                thread = await session.get(Thread, id)
                if thread is None:
                    return None
                if not thread.is_active:
                    await self._deactivate_family(session, thread.root_prompt_id, thread.owner_id)
                    thread.is_active = True
            return thread

    async def deactivate(self, id: str) -> bool:
        async with self._sf() as session:
            async with session.begin():
                result = await session.execute(
                    update(Thread).where(Thread.id == id, Thread.is_active.is_(True)).values(is_active=False)
                )
                return result.rowcount > 0

    async def touch(self, id: str, at: datetime | None = None) -> bool:
        async with self._sf() as session:
            async with session.begin():
                result = await session.execute(
                    update(Thread).where(Thread.id == id).values(last_message_at=at or datetime.now(UTC))
                )
                return result.rowcount > 0

    @staticmethod
    async def _select_active(session: AsyncSession, root_prompt_id: str, owner_id: str) -> Thread | None:
        result = await session.execute(
            select(Thread).where(*_family(root_prompt_id, owner_id), Thread.is_active.is_(True))
        )
        return result.scalars().first()

    @staticmethod
    async def _deactivate_family(session: AsyncSession, root_prompt_id: str, owner_id: str) -> None:
        await session.execute(
            update(Thread)
            .where(*_family(root_prompt_id, owner_id), Thread.is_active.is_(True))
            .values(is_active=False)
            .execution_options(synchronize_session=False)
        )
