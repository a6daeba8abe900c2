"""Tests for family root resolution and thread management."""

import asyncio

import pytest
import pytest_asyncio
from sqlalchemy import select

from promptrun.db import Thread
from promptrun.repositories import SQLAlchemyPromptRepository, SQLAlchemyThreadRepository
from promptrun.services import MAX_ANCESTOR_HOPS, ThreadResolver


class DictPromptTree:
    """Parent links held in memory; counts lookups."""

    def __init__(self, parents):
        self.parents = parents
        self.lookups = 0

    async def get_parent_id(self, prompt_id):
        self.lookups += 1
        return self.parents.get(prompt_id)


@pytest_asyncio.fixture
async def prompts(session_factory):
    repo = SQLAlchemyPromptRepository(session_factory)
    root = await repo.create(name="Root")
    child = await repo.create(name="Child", parent_id=root.id)
    grandchild = await repo.create(name="Grandchild", parent_id=child.id)
    return repo, root, child, grandchild


@pytest_asyncio.fixture
async def resolver(session_factory, prompts):
    repo, *_ = prompts
    resolver = ThreadResolver(repo, SQLAlchemyThreadRepository(session_factory))
    yield resolver
    resolver.close()


async def _active_rows(session_factory, root_id, owner_id):
    async with session_factory() as session:
        result = await session.execute(
            select(Thread).where(
                Thread.root_prompt_id == root_id,
                Thread.owner_id == owner_id,
                Thread.is_active.is_(True),
            )
        )
        return list(result.scalars().all())


class TestResolveRoot:
    @pytest.mark.asyncio
    async def test_walks_to_root(self, resolver, prompts):
        _, root, child, grandchild = prompts
        assert await resolver.resolve_root(grandchild.id) == root.id
        assert await resolver.resolve_root(child.id) == root.id
        assert await resolver.resolve_root(root.id) == root.id

    @pytest.mark.asyncio
    async def test_stops_at_hop_limit(self):
        # Chain n0 <- n1 <- ... <- n20
        parents = {f"n{i}": f"n{i - 1}" for i in range(1, 21)}
        resolver = ThreadResolver(DictPromptTree(parents), threads=None)

        assert await resolver.resolve_root("n20") == f"n{20 - MAX_ANCESTOR_HOPS}"

    @pytest.mark.asyncio
    async def test_cycle_terminates(self):
        tree = DictPromptTree({"a": "b", "b": "a"})
        resolver = ThreadResolver(tree, threads=None)

        root = await resolver.resolve_root("a")

        assert root in {"a", "b"}
        assert tree.lookups == MAX_ANCESTOR_HOPS

    @pytest.mark.asyncio
    async def test_roots_are_cached_until_cleared(self):
        tree = DictPromptTree({"child": "root"})
        resolver = ThreadResolver(tree, threads=None)

        await resolver.resolve_root("child")
        await resolver.resolve_root("child")
        assert tree.lookups == 2

        resolver.clear_cache()
        await resolver.resolve_root("child")
        assert tree.lookups == 4


class TestThreads:
    @pytest.mark.asyncio
    async def test_family_shares_active_thread(self, resolver, prompts):
        _, root, child, grandchild = prompts
        thread = await resolver.ensure_thread(grandchild.id, "user-1")

        assert thread.root_prompt_id == root.id
        assert (await resolver.active_thread(child.id, "user-1")).id == thread.id
        assert (await resolver.ensure_thread(root.id, "user-1")).id == thread.id
        assert await resolver.active_thread(root.id, "user-2") is None

    @pytest.mark.asyncio
    async def test_start_new_thread_replaces_active(self, resolver, prompts, session_factory):
        _, root, child, _ = prompts
        first = await resolver.ensure_thread(child.id, "user-1")
        second = await resolver.start_new_thread(child.id, "user-1", title="Fresh")

        active = await _active_rows(session_factory, root.id, "user-1")
        assert [t.id for t in active] == [second.id]
        assert second.title == "Fresh"
        threads = await resolver.list_threads(root.id, "user-1")
        assert {t.id for t in threads} == {first.id, second.id}

    @pytest.mark.asyncio
    async def test_concurrent_new_threads_leave_one_active(self, resolver, prompts, session_factory):
        _, root, child, grandchild = prompts

        await asyncio.gather(
            resolver.start_new_thread(child.id, "user-1"),
            resolver.start_new_thread(grandchild.id, "user-1"),
            resolver.ensure_thread(root.id, "user-1"),
            resolver.start_new_thread(root.id, "user-1"),
        )

        assert len(await _active_rows(session_factory, root.id, "user-1")) == 1

    @pytest.mark.asyncio
    async def test_switch_thread(self, resolver, prompts, session_factory):
        _, root, child, _ = prompts
        first = await resolver.start_new_thread(child.id, "user-1")
        await resolver.start_new_thread(child.id, "user-1")

        switched = await resolver.switch_thread(child.id, "user-1", first.id)

        assert switched.id == first.id
        active = await _active_rows(session_factory, root.id, "user-1")
        assert [t.id for t in active] == [first.id]

    @pytest.mark.asyncio
    async def test_switch_rejects_foreign_thread(self, resolver, prompts):
        _, _, child, _ = prompts
        theirs = await resolver.ensure_thread(child.id, "user-2")
        assert await resolver.switch_thread(child.id, "user-1", theirs.id) is None

    @pytest.mark.asyncio
    async def test_delete_and_record_activity(self, resolver, prompts):
        _, _, child, _ = prompts
        thread = await resolver.ensure_thread(child.id, "user-1")

        assert await resolver.record_activity(thread.id) is True
        refreshed = await resolver.threads.get_by_id(thread.id)
        assert refreshed.last_message_at is not None

        assert await resolver.delete_thread(thread.id) is True
        assert await resolver.delete_thread(thread.id) is False
        assert await resolver.active_thread(child.id, "user-1") is None


class TestThreadRepository:
    @pytest.mark.asyncio
    async def test_unique_index_rejects_second_active_thread(self, session_factory):
        from sqlalchemy.exc import IntegrityError

        with pytest.raises(IntegrityError):
            async with session_factory() as session:
                async with session.begin():
                    session.add(Thread(root_prompt_id="r", owner_id="u", is_active=True))
                    session.add(Thread(root_prompt_id="r", owner_id="u", is_active=True))

    @pytest.mark.asyncio
    async def test_get_or_create_active_without_shared_lock(self, session_factory):
        repos = [SQLAlchemyThreadRepository(session_factory) for _ in range(3)]

        threads = await asyncio.gather(*(repo.get_or_create_active("r", "u") for repo in repos))

        assert len({t.id for t in threads}) == 1
        assert len(await _active_rows(session_factory, "r", "u")) == 1

    @pytest.mark.asyncio
    async def test_inactive_threads_do_not_conflict(self, session_factory):
        repo = SQLAlchemyThreadRepository(session_factory)
        for _ in range(3):
            await repo.replace_active("r", "u")

        threads = await repo.list_for_family("r", "u")
        assert len(threads) == 3
        assert [t.is_active for t in threads] == [True, False, False]
