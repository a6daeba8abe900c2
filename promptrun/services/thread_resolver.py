"""Maps prompts to their family root and the family's active thread."""

from __future__ import annotations

import asyncio
from collections import defaultdict

from promptrun.core.logging import get_logger
from promptrun.db.models import Thread
from promptrun.repositories.prompt_repo import PromptTree
from promptrun.repositories.thread_repo import ThreadRepository

logger = get_logger(__name__)

MAX_ANCESTOR_HOPS = 15


class ThreadResolver:
    """Resolves family roots and manages the active thread of each family.

    A family is the tree of prompts under one top-level prompt. Every prompt
    in it shares the family's active thread, per owner.
    """

    def __init__(self, prompts: PromptTree, threads: ThreadRepository):
        self.prompts = prompts
        self.threads = threads
        self._root_cache: dict[str, str] = {}
        self._family_locks: dict[tuple[str, str], asyncio.Lock] = defaultdict(asyncio.Lock)

    async def resolve_root(self, prompt_id: str) -> str:
        """Walk parent links up to the family root.

        The walk stops after MAX_ANCESTOR_HOPS hops and returns the last node
        reached, so cyclic or very deep data cannot hang the caller.
        """
        cached = self._root_cache.get(prompt_id)
        if cached is not None:
            return cached

        current = prompt_id
        hops = 0
        while hops < MAX_ANCESTOR_HOPS:
            parent_id = await self.prompts.get_parent_id(current)
            if not parent_id:
                break
            current = parent_id
            hops += 1
        else:
            logger.warning(
                "Ancestor walk hit the hop limit",
                data={"prompt_id": prompt_id, "stopped_at": current, "max_hops": MAX_ANCESTOR_HOPS},
            )

        self._root_cache[prompt_id] = current
        return current

    def clear_cache(self) -> None:
        self._root_cache.clear()

    def close(self) -> None:
        self.clear_cache()
        self._family_locks.clear()

    def _lock_for(self, root_id: str, owner_id: str) -> asyncio.Lock:
        return self._family_locks[(root_id, owner_id)]

    async def active_thread(self, prompt_id: str, owner_id: str) -> Thread | None:
        root_id = await self.resolve_root(prompt_id)
        return await self.threads.get_active(root_id, owner_id)

    async def list_threads(self, prompt_id: str, owner_id: str, limit: int = 100) -> list[Thread]:
        root_id = await self.resolve_root(prompt_id)
        return await self.threads.list_for_family(root_id, owner_id, limit=limit)

    async def start_new_thread(self, prompt_id: str, owner_id: str, title: str | None = None) -> Thread:
        """Deactivate the family's current thread and create a fresh active one."""
        root_id = await self.resolve_root(prompt_id)
        async with self._lock_for(root_id, owner_id):
            thread = await self.threads.replace_active(root_id, owner_id, title=title)
        logger.info("Started new thread", data={"thread_id": thread.id, "root_prompt_id": root_id})
        return thread

    async def ensure_thread(self, prompt_id: str, owner_id: str, title: str | None = None) -> Thread:
        """Return the family's active thread, creating it when absent."""
        root_id = await self.resolve_root(prompt_id)
        async with self._lock_for(root_id, owner_id):
            return await self.threads.get_or_create_active(root_id, owner_id, title=title)

    async def switch_thread(self, prompt_id: str, owner_id: str, thread_id: str) -> Thread | None:
        """Make an existing thread of the family the active one."""
        root_id = await self.resolve_root(prompt_id)
        async with self._lock_for(root_id, owner_id):
            thread = await self.threads.get_by_id(thread_id)
            if thread is None or thread.root_prompt_id != root_id or thread.owner_id != owner_id:
                logger.warning(
                    "Thread does not belong to family",
                    data={"thread_id": thread_id, "root_prompt_id": root_id},
                )
                return None
            return await self.threads.activate(thread_id)

    async def delete_thread(self, thread_id: str) -> bool:
        return await self.threads.deactivate(thread_id)

    async def record_activity(self, thread_id: str) -> bool:
        return await self.threads.touch(thread_id)
