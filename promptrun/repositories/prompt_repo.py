"""Prompt repository (read-only parent lookups)."""

from __future__ import annotations

from typing import Protocol, runtime_checkable

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..db.models import Prompt


@runtime_checkable
class PromptTree(Protocol):
    async def get_parent_id(self, prompt_id: str) -> str | None:
        """Parent of a prompt, or None for a root or an unknown prompt."""
        ...


class SQLAlchemyPromptRepository:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._sf = session_factory

    async def get_parent_id(self, prompt_id: str) -> str | None:
        async with self._sf() as session:
            result = await session.execute(select(Prompt.parent_id).where(Prompt.id == prompt_id))
            return result.scalar_one_or_none()

    async def create(self, name: str = "", parent_id: str | None = None, id: str | None = None) -> Prompt:
        async with self._sf() as session:
            async with session.begin():
                prompt = Prompt(name=name, parent_id=parent_id)
                if id is not None:
                    prompt.id = id
                session.add(prompt)
            return prompt
