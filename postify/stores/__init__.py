"""Store interfaces and the in-memory implementation."""

from postify.stores.base import ContentStore, CredentialStore, JobStore
from postify.stores.inmemory import (
    InMemoryContentStore,
    InMemoryCredentialStore,
    InMemoryJobStore,
)

__all__ = [
    "CredentialStore",
    "ContentStore",
    "JobStore",
    "InMemoryCredentialStore",
    "InMemoryContentStore",
    "InMemoryJobStore",
]
