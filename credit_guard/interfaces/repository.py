"""Repository protocol: versioned key-value persistence."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Generic, Protocol, TypeVar

T = TypeVar("T")


@dataclass(frozen=True)
class Versioned(Generic[T]):
    value: T
    version: int


class Repository(Protocol[T]):
    """Entities keyed by id. Version 0 means "absent" for compare_and_swap."""

    async def get(self, key: str) -> Versioned[T] | None: ...

    async def put(self, key: str, value: T) -> int: ...

    async def list(self) -> list[T]: ...

    async def compare_and_swap(self, key: str, expected_version: int, value: T) -> bool: ...
