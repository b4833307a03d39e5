"""Repository implementations package."""
from .memory import (
    InMemoryContentStore,
    InMemoryProfileStorage,
    InMemorySessionStorage,
    InMemoryTrendingSignalSource,
)

__all__ = [
    "InMemoryContentStore",
    "InMemoryProfileStorage",
    "InMemorySessionStorage",
    "InMemoryTrendingSignalSource",
]
