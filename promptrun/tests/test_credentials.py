import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from promptrun.auth import Credential, RefreshingCredentialProvider, StaticCredentialProvider
from promptrun.core.exceptions import AuthenticationError


@pytest.mark.asyncio
async def test_static_provider():
    assert await StaticCredentialProvider("tok").get_token() == "tok"
    with pytest.raises(AuthenticationError):
        await StaticCredentialProvider("").get_token()


@pytest.mark.asyncio
async def test_refreshing_provider_caches_until_leeway():
    fetches = []

    async def fetch():
        fetches.append(1)
        return Credential(f"tok-{len(fetches)}", expires_at=datetime.now(timezone.utc) + timedelta(minutes=5))

    provider = RefreshingCredentialProvider(fetch, leeway_seconds=30)

    assert await provider.get_token() == "tok-1"
    assert await provider.get_token() == "tok-1"
    provider.invalidate()
    assert await provider.get_token() == "tok-2"


@pytest.mark.asyncio
async def test_refreshing_provider_refetches_near_expiry():
    fetches = []

    async def fetch():
        fetches.append(1)
        return Credential("tok", expires_at=datetime.now(timezone.utc) + timedelta(seconds=10))

    provider = RefreshingCredentialProvider(fetch, leeway_seconds=30)
    await provider.get_token()
    await provider.get_token()
    assert len(fetches) == 2


@pytest.mark.asyncio
async def test_concurrent_callers_share_one_refresh():
    fetches = []

    async def fetch():
        fetches.append(1)
        await asyncio.sleep(0)
        return Credential("tok")

    provider = RefreshingCredentialProvider(fetch)
    tokens = await asyncio.gather(*(provider.get_token() for _ in range(5)))
    assert tokens == ["tok"] * 5
    assert len(fetches) == 1


@pytest.mark.asyncio
async def test_missing_session_raises():
    async def fetch():
        return None

    with pytest.raises(AuthenticationError):
        await RefreshingCredentialProvider(fetch).get_token()
