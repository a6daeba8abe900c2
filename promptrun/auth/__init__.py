"""Credential providers for the execution service."""

from promptrun.auth.credentials import (
    Credential,
    CredentialProvider,
    RefreshingCredentialProvider,
    StaticCredentialProvider,
)

__all__ = [
    "Credential",
    "CredentialProvider",
    "StaticCredentialProvider",
    "RefreshingCredentialProvider",
]
