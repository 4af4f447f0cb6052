"""Strategies for scheduling fuzzing campaigns of a project's harnesses."""

from __future__ import annotations

import logging
import random
from abc import ABC, abstractmethod
from collections import deque
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Iterable

from fuzzor.config import ProjectConfig
from fuzzor.env import EnvironmentParams
from fuzzor.harness import Harness

log = logging.getLogger(__name__)


class SchedulingError(Exception):
    """Raised when no campaign can be scheduled or finished."""


@dataclass
class CampaignSchedulerInput:
    """The harnesses of a new build and what changed in its revision."""

    harnesses: dict[str, Harness]
    modified_files: list[str] = field(default_factory=list)
    commit_hash: str = ""


def _params(
    project_config: ProjectConfig, harness_name: str, duration: timedelta, commit_hash: str
) -> EnvironmentParams:
    return EnvironmentParams(
        docker_image=f"fuzzor-{project_config.name}:latest",
        harness_name=harness_name,
        duration=duration,
        project_config=project_config,
        commit_hash=commit_hash,
    )


class CampaignScheduler(ABC):
    """Decides which harness is fuzzed next."""

    @abstractmethod
    def next(self) -> EnvironmentParams:
        """Return the parameters for the next campaign; raise SchedulingError if none."""

    @abstractmethod
    def finish(self, harness: str) -> None:
        """Mark the campaign of a harness as finished."""

    @abstractmethod
    def sync_schedule(self, input: CampaignSchedulerInput) -> None:
        """Bring the schedule in line with the current harnesses."""


class RoundRobinCampaignScheduler(CampaignScheduler):
    """Schedules every harness in turn, in a shuffled circular order."""

    def __init__(
        self,
        project_config: ProjectConfig,
        duration: timedelta,
        rng: random.Random | None = None,
    ) -> None:
        self.project_config = project_config
        self.duration = duration
        self.commit_hash = ""
        self._rng = rng or random.Random()
        self._schedule: list[str] = []
        self._next = 0
        self._unfinished: set[str] = set()

    def next(self) -> EnvironmentParams:
        if not self._schedule:
            raise SchedulingError("Nothing in the current schedule")
        harness_name = self._schedule[self._next]
        if harness_name in self._unfinished:
            raise SchedulingError("Attempted to reschedule unfinished campaign")
        self._unfinished.add(harness_name)
        self._next = (self._next + 1) % len(self._schedule)
        return _params(self.project_config, harness_name, self.duration, self.commit_hash)

    def finish(self, harness: str) -> None:
        try:
            self._unfinished.remove(harness)
        except KeyError:
            raise SchedulingError("Harness was not previously scheduled") from None

    def sync_schedule(self, input: CampaignSchedulerInput) -> None:
        self._schedule = list(input.harnesses)
        self._rng.shuffle(self._schedule)
        self._next = 0
        self.commit_hash = input.commit_hash
        log.debug("Synced schedule %d", len(self._schedule))


class CoverageBasedScheduler(CampaignScheduler):
    """Schedules new harnesses and harnesses that reach modified files.

    Given the harnesses of a base project, harnesses not in the base are new and
    base harnesses covering a modified file are scheduled. Without a base, a
    harness with no known coverage counts as new, and a round-robin fallback takes
    over once the coverage based schedule is empty.
    """

    def __init__(
        self,
        project_config: ProjectConfig,
        duration: timedelta,
        base_harnesses: dict[str, Harness] | None = None,
        *,
        fallback: RoundRobinCampaignScheduler | None = None,
    ) -> None:
        self.project_config = project_config
        self.duration = duration
        self.base_harnesses = base_harnesses
        self.commit_hash = ""
        self._fallback = fallback
        self._schedule: deque[str] = deque()

    @classmethod
    def with_round_robin_fallback(
        cls, project_config: ProjectConfig, duration: timedelta
    ) -> CoverageBasedScheduler:
        return cls(
            project_config,
            duration,
            fallback=RoundRobinCampaignScheduler(project_config, duration),
        )

    @property
    def pending(self) -> list[str]:
        """Harnesses waiting in the coverage based schedule, next first."""
        return list(self._schedule)

    def next(self) -> EnvironmentParams:
        if self._schedule:
            harness_name = self._schedule.popleft()
            return _params(self.project_config, harness_name, self.duration, self.commit_hash)
        if self._fallback is not None:
            return self._fallback.next()
        raise SchedulingError("Nothing in current schedule")

    def finish(self, harness: str) -> None:
        if self._fallback is not None:
            try:
                self._fallback.finish(harness)
            except SchedulingError:
                pass

    def sync_schedule(self, input: CampaignSchedulerInput) -> None:
        self.commit_hash = input.commit_hash
        if self._fallback is not None:
            self._fallback.sync_schedule(input)

        if self.base_harnesses is not None:
            self._sync_against_base(input, self.base_harnesses)
        else:
            self._sync_by_coverage(input)

    def _sync_against_base(
        self, input: CampaignSchedulerInput, base_harnesses: dict[str, Harness]
    ) -> None:
        harnesses = input.harnesses
        new_harnesses = [name for name in harnesses if name not in base_harnesses]

        self._schedule.clear()
        self._schedule.extend(new_harnesses)
        scheduled = set(new_harnesses)

        for file in input.modified_files:
            for name, harness in base_harnesses.items():
                if name in scheduled or not harness.state.covers_file(file):
                    continue
                scheduled.add(name)
                # The harness might have been removed from the current build.
                if name in harnesses:
                    self._schedule.append(name)

    def _sync_by_coverage(self, input: CampaignSchedulerInput) -> None:
        current = set(self._schedule)
        newly_scheduled: list[str] = []
        for file in input.modified_files:
            for name, harness in input.harnesses.items():
                state = harness.state
                if state.covered_files() and not state.covers_file(file):
                    continue
                if name not in current:
                    newly_scheduled.append(name)
                    self._schedule.appendleft(name)
                    current.add(name)

        log.info(
            "Scheduled %d harnesses to reach %d modified files "
            "(project='%s', files=%r, scheduled=%r)",
            len(newly_scheduled),
            len(input.modified_files),
            self.project_config.name,
            input.modified_files,
            newly_scheduled,
        )


class OneShotScheduler(CampaignScheduler):
    """Schedules a fixed list of harnesses once per build."""

    def __init__(
        self, project_config: ProjectConfig, duration: timedelta, harnesses: Iterable[str]
    ) -> None:
        self.project_config = project_config
        self.duration = duration
        self.harnesses = list(harnesses)
        self.commit_hash = ""
        self._schedule: deque[str] = deque()

    def next(self) -> EnvironmentParams:
        if not self._schedule:
            raise SchedulingError("Nothing in the current schedule")
        harness_name = self._schedule.popleft()
        return _params(self.project_config, harness_name, self.duration, self.commit_hash)

    def finish(self, harness: str) -> None:
        return None

    def sync_schedule(self, input: CampaignSchedulerInput) -> None:
        self.commit_hash = input.commit_hash
        self._schedule = deque(name for name in self.harnesses if name in input.harnesses)