"""Fuzzing environments, their allocation and a shared resource pool."""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from collections import deque
from dataclasses import dataclass
from datetime import timedelta
from typing import Generic, Iterable, TypeVar

from fuzzor.config import FuzzerStats, ProjectConfig
from fuzzor.solutions import Solution

T = TypeVar("T")
E = TypeVar("E", bound="Environment")


class Environment(ABC):
    """A place where a fuzzing campaign runs. Failing operations raise."""

    preserve: bool = False

    @abstractmethod
    async def get_id(self) -> str:
        """Environment identifier."""

    @abstractmethod
    async def get_num_cpus(self) -> int:
        """Number of CPUs allocated to this environment."""

    @abstractmethod
    async def get_stats(self) -> FuzzerStats:
        """Fuzzer stats aggregated over all fuzz instances of the campaign."""

    @abstractmethod
    async def get_solutions(self) -> list[Solution]:
        """All solutions found so far."""

    @abstractmethod
    async def reproduce_solutions(self, solutions: list[Solution]) -> list[Solution]:
        """Try to reproduce the given solutions, returning those that do."""

    @abstractmethod
    async def get_corpus(self, minimize: bool) -> bytes:
        """Tarball of the corpus."""

    @abstractmethod
    async def get_covered_files(self) -> list[str]:
        """Names of source files covered through fuzzing."""

    @abstractmethod
    async def get_covered_functions(self) -> list[str]:
        """Names of functions covered through fuzzing."""

    @abstractmethod
    async def get_coverage_report(self) -> bytes:
        """Tarball of the coverage report."""

    @abstractmethod
    async def get_coverage_summary(self) -> bytes:
        """Raw coverage summary JSON."""

    @abstractmethod
    async def upload_initial_corpus(self, corpus: bytes) -> None:
        """Upload a corpus tarball to start fuzzing from."""

    @abstractmethod
    async def start(self) -> None:
        """Start fuzzing."""

    @abstractmethod
    async def shutdown(self) -> bool:
        """Shut the environment down; return whether that succeeded."""

    @abstractmethod
    async def ping(self) -> bool:
        """Return whether fuzzing is still running."""

    async def set_preserve(self, preserve: bool) -> None:
        """Mark the environment to be kept on shutdown."""
        self.preserve = preserve


@dataclass
class EnvironmentParams:
    """What a campaign asks of the environment it gets."""

    docker_image: str
    harness_name: str
    duration: timedelta
    project_config: ProjectConfig
    commit_hash: str
    arch: str | None = None


class EnvironmentAllocator(ABC, Generic[E]):
    """Hands out environments and takes them back."""

    @abstractmethod
    async def alloc(self, params: EnvironmentParams) -> E:
        """Allocate a new environment."""

    @abstractmethod
    async def free(self, env: E) -> bool:
        """Give an environment back to the allocator."""


class ResourcePool(Generic[T]):
    """A FIFO pool of resources; takers wait in order until enough are available."""

    def __init__(self, resources: Iterable[T] = ()) -> None:
        self._queue: deque[T] = deque(resources)
        self._available = asyncio.Condition()
        self._takers = asyncio.Lock()

    async def take_one(self) -> T:
        (resource,) = await self.take_many(1)
        return resource

    async def take_many(self, num: int) -> list[T]:
        async with self._takers:
            async with self._available:
                await self._available.wait_for(lambda: len(self._queue) >= num)
                return [self._queue.popleft() for _ in range(num)]

    async def add_one(self, resource: T) -> None:
        await self.add_many([resource])

    async def add_many(self, resources: Iterable[T]) -> None:
        async with self._available:
            self._queue.extend(resources)
            self._available.notify_all()