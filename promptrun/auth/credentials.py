"""Access tokens attached to execution service requests."""

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional, Protocol

from promptrun.core.exceptions import AuthenticationError
from promptrun.core.logging import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class Credential:
    token: str
    expires_at: Optional[datetime] = None

    def is_valid(self, leeway: timedelta = timedelta(0)) -> bool:
        if not self.token:
            return False
        if self.expires_at is None:
            return True
        return datetime.now(timezone.utc) + leeway < self.expires_at


class CredentialProvider(Protocol):
    async def get_token(self) -> str:
        """Return a bearer token or raise AuthenticationError."""
        ...


class StaticCredentialProvider:
    """Fixed token, e.g. a service key from the environment."""

    def __init__(self, token: Optional[str]):
        self._token = token

    async def get_token(self) -> str:
        if not self._token:
            raise AuthenticationError()
        return self._token


class RefreshingCredentialProvider:
    """Caches a short-lived credential and refetches it shortly before expiry.

    Concurrent callers share one refresh.
    """

    def __init__(
        self,
        fetch: Callable[[], Awaitable[Optional[Credential]]],
        leeway_seconds: float = 30.0,
    ):
        self._fetch = fetch
        self._leeway = timedelta(seconds=leeway_seconds)
        self._credential: Optional[Credential] = None
        self._lock = asyncio.Lock()

    async def get_token(self) -> str:
        credential = self._credential
        if credential is not None and credential.is_valid(self._leeway):
            return credential.token

        async with self._lock:
            credential = self._credential
            if credential is None or not credential.is_valid(self._leeway):
                credential = await self._fetch()
                if credential is None or not credential.token:
                    self._credential = None
                    raise AuthenticationError()
                self._credential = credential
                logger.debug(
                    "Refreshed credential",
                    data={"expires_at": credential.expires_at.isoformat() if credential.expires_at else None},
                )
            return credential.token

    def invalidate(self) -> None:
        """Drop the cached credential, e.g. after a 401."""
        self._credential = None
