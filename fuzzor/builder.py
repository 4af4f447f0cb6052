"""Project revisions, revision tracking and project builds."""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Iterable

if TYPE_CHECKING:
    from fuzzor.description import ProjectDescription


@dataclass(frozen=True)
class Revision:
    """A revision of a project's source code.

    ``previous_commit_hash`` is None when there was no previous revision and
    ``modified_files`` lists the files changed since that previous revision.
    """

    commit_hash: str
    previous_commit_hash: str | None = None
    modified_files: tuple[str, ...] = field(default_factory=tuple)

    def __post_init__(self) -> None:
        object.__setattr__(self, "modified_files", tuple(self.modified_files))


class RevisionTracker(ABC):
    """Watches a project for new revisions."""

    @abstractmethod
    async def track(self, current: Revision | None) -> Revision:
        """Resolve into a revision newer than ``current`` once one is available."""


@dataclass(frozen=True)
class ProjectBuild:
    """The harnesses produced by building a project at a revision."""

    harnesses: frozenset[str]
    revision: Revision

    def __init__(self, harnesses: Iterable[str], revision: Revision) -> None:
        object.__setattr__(self, "harnesses", frozenset(harnesses))
        object.__setattr__(self, "revision", revision)


class ProjectBuilder(ABC):
    """Builds a project description at a revision."""

    @abstractmethod
    async def build(self, description: ProjectDescription, revision: Revision) -> ProjectBuild:
        """Build the project; raise if the build fails."""