"""Fuzzing campaigns: one harness fuzzed in one environment."""

from __future__ import annotations

import asyncio
import enum
import logging
import os
from collections import Counter
from dataclasses import dataclass
from datetime import timedelta
from typing import Union

from fuzzor.config import CampaignStartupParams, FuzzerStats, ProjectConfig, Sanitizer
from fuzzor.env import Environment
from fuzzor.harness import Harness
from fuzzor.solutions import Solution, SolutionKind

log = logging.getLogger(__name__)

DEFAULT_INSPECT_INTERVAL = 60


class CampaignState(enum.Enum):
    """Lifecycle of a campaign."""

    SCHEDULED = "Scheduled"
    FUZZING = "Fuzzing"
    ENDED = "Ended"


@dataclass(frozen=True)
class CampaignInitialized:
    harness: str


@dataclass(frozen=True)
class CampaignStateChanged:
    """Fired when a campaign changes state."""

    harness: str
    old: CampaignState
    new: CampaignState


@dataclass(frozen=True)
class NewSolution:
    """Fired when a campaign discovers a solution not seen before."""

    harness: str
    solution: Solution


@dataclass(frozen=True)
class ResolvedSolution:
    """Fired when a known solution no longer reproduces."""

    harness: str
    solution: Solution


@dataclass(frozen=True)
class CampaignStats:
    harness: str
    stats: FuzzerStats


@dataclass(frozen=True)
class CampaignQuit:
    """Fired when a campaign quits, with its minimized corpus if one was fetched."""

    harness: str
    corpus: bytes | None


CampaignEvent = Union[
    CampaignInitialized,
    CampaignStateChanged,
    NewSolution,
    ResolvedSolution,
    CampaignStats,
    CampaignQuit,
]


def _interval_from_environment() -> float:
    value = os.environ.get("FUZZOR_CAMPAIGN_INTERVAL")
    if value is None:
        return float(DEFAULT_INSPECT_INTERVAL)
    try:
        seconds = int(value)
    except ValueError:
        raise ValueError("FUZZOR_CAMPAIGN_INTERVAL should be a value in seconds") from None
    if seconds <= 0:
        raise ValueError("FUZZOR_CAMPAIGN_INTERVAL should be a value in seconds")
    return float(seconds)


class Campaign:
    """Fuzzes one harness in one environment and reports what happens as events."""

    def __init__(
        self,
        project_config: ProjectConfig,
        harness: Harness,
        env: Environment,
        event_queue: asyncio.Queue,
        commit_hash: str,
        duration: timedelta,
        inspect_interval: float | None = None,
    ) -> None:
        self.project_config = project_config
        self.harness = harness
        self.env = env
        self.event_queue = event_queue
        self.commit_hash = commit_hash
        self.duration = duration
        self.state = CampaignState.SCHEDULED
        self.last_reported_stats: FuzzerStats | None = None
        self._inspect_interval = inspect_interval

    @property
    def harness_name(self) -> str:
        return self.harness.name

    async def _send_event(self, event: CampaignEvent) -> None:
        log.debug("Sending event: %r", event)
        await self.event_queue.put(event)

    async def _new_state(self, new_state: CampaignState) -> None:
        old = self.state
        valid = (old, new_state) == (CampaignState.SCHEDULED, CampaignState.FUZZING) or (
            new_state is CampaignState.ENDED
        )
        if not valid:
            log.error("Invalid campaign state transition: %s -> %s", old, new_state)
        log.debug("New campaign state: %s -> %s", old, new_state)
        self.state = new_state
        await self._send_event(CampaignStateChanged(self.harness_name, old, new_state))

    async def _process_solutions(self, solutions: list[Solution]) -> None:
        tracker = self.harness.state.solutions()
        duplicates: Counter[str] = Counter()
        for solution in solutions:
            if tracker.submit(solution):
                log.info(
                    "Stored new solution harness=%s id=%s", self.harness_name, solution.id
                )
                await self._send_event(NewSolution(self.harness_name, solution))
            else:
                duplicates[solution.id] += 1

        for solution_id, count in duplicates.items():
            log.info(
                "Did not store %d duplicate solutions with id=%s for harness=%s",
                count,
                solution_id,
                self.harness_name,
            )

        if solutions:
            # Solutions tend to block fuzzers from making progress, so end the campaign.
            await self._new_state(CampaignState.ENDED)

    async def _process_stats(self, stats: FuzzerStats) -> None:
        if self.state is CampaignState.SCHEDULED and stats.execs_per_sec > 0.0:
            await self._new_state(CampaignState.FUZZING)

        found_solutions = stats.saved_crashes + stats.saved_hangs > 0

        campaign_id = await self.env.get_id()
        self.harness.state.record_stats(campaign_id, stats)

        last = self.last_reported_stats
        if last is None or found_solutions or stats.corpus_count > last.corpus_count:
            await self._send_event(CampaignStats(self.harness_name, stats))
            self.last_reported_stats = stats

        if not found_solutions:
            return

        try:
            solutions = await self.env.get_solutions()
        except Exception as exc:
            log.warning("%s", exc)
            return

        reproduced_hangs = sum(s.kind is SolutionKind.TIMEOUT for s in solutions)
        if reproduced_hangs < stats.saved_hangs:
            log.warning(
                "%d hangs did not reproduce (harness=%s, project=%s)",
                stats.saved_hangs - reproduced_hangs,
                self.harness_name,
                self.project_config.name,
            )

        reproduced_crashes = sum(s.kind is SolutionKind.CRASH for s in solutions)
        end = False
        if stats.saved_crashes > 0 and reproduced_crashes == 0:
            log.error(
                "%d crashes did not reproduce (harness=%s, project=%s)",
                stats.saved_crashes,
                self.harness_name,
                self.project_config.name,
            )
            await self.env.set_preserve(True)
            end = True

        await self._process_solutions(solutions)

        if end:
            await self._new_state(CampaignState.ENDED)

    async def _check_existing_solutions(self) -> bool:
        """Reproduce known solutions; return whether any of them still reproduces."""
        tracker = self.harness.state.solutions()
        existing = tracker.get_all()
        existing_ids = {s.id for s in existing}
        try:
            reproduced = await self.env.reproduce_solutions(existing)
        except Exception as exc:
            log.warning("Could not reproduce initial solutions: %s", exc)
            return False

        reproduced_ids = {s.id for s in reproduced}
        still_open = False
        for solution_id in sorted(existing_ids):
            if solution_id in reproduced_ids:
                log.info(
                    "Existing solution (%s) still reproduces (project='%s', harness='%s')",
                    solution_id,
                    self.project_config.name,
                    self.harness_name,
                )
                still_open = True
                continue
            log.info(
                "Existing solution (%s) no longer reproduces (project='%s', harness='%s')",
                solution_id,
                self.project_config.name,
                self.harness_name,
            )
            solution = tracker.mark_as_resolved(solution_id)
            if solution is None:
                raise RuntimeError("Solution has to exist in the tracker at this point")
            await self._send_event(ResolvedSolution(self.harness_name, solution))
        return still_open

    async def _inspect(self) -> None:
        try:
            stats = await self.env.get_stats()
        except Exception as exc:
            log.debug("%s", exc)
            return
        await self._process_stats(stats)

    async def _collect_coverage(self) -> None:
        state = self.harness.state
        try:
            covered_files = await self.env.get_covered_files()
        except Exception as exc:
            log.warning("Could not fetch covered files from env: %s", exc)
        else:
            log.debug("Covered files for harness '%s': %r", self.harness_name, covered_files)
            state.set_covered_files(covered_files)

        try:
            covered_functions = await self.env.get_covered_functions()
        except Exception as exc:
            log.warning("Could not fetch covered functions from env: %s", exc)
        else:
            log.debug(
                "Covered functions for harness '%s': %d functions",
                self.harness_name,
                len(covered_functions),
            )
            state.set_covered_functions(covered_functions)

        try:
            report = await self.env.get_coverage_report()
        except Exception as exc:
            log.warning("Could not fetch coverage report from env: %s", exc)
        else:
            state.store_coverage_report(report)

        try:
            summary = await self.env.get_coverage_summary()
        except Exception as exc:
            log.warning("Could not fetch coverage summary from env: %s", exc)
        else:
            state.store_coverage_summary(await self.env.get_id(), summary)

    async def run(self, quit_queue: asyncio.Queue) -> None:
        """Run the campaign until it ends or is told to quit.

        A value put on ``quit_queue`` quits the campaign; a true value kills it
        without collecting its corpus or sending a quit event.
        """
        await self._send_event(CampaignInitialized(self.harness_name))

        try:
            await self.env.start()
        except Exception as exc:
            log.warning("Could not start environment: %s", exc)

        campaign_id = await self.env.get_id()
        log.info(
            "New campaign: project='%s' harness='%s' env='%s'",
            self.project_config.name,
            self.harness_name,
            campaign_id[:8],
        )
        self.harness.state.store_startup_params(
            campaign_id,
            CampaignStartupParams(
                num_cpus=await self.env.get_num_cpus(),
                duration_secs=int(self.duration.total_seconds()),
                engines=self.project_config.engines,
                sanitizers=self.project_config.sanitizers,
                commit_hash=self.commit_hash,
            ),
        )

        # Campaigns with unresolved solutions quit right away.
        quit = await self._check_existing_solutions()
        kill = False

        interval = (
            self._inspect_interval
            if self._inspect_interval is not None
            else _interval_from_environment()
        )

        loop = asyncio.get_running_loop()
        quit_task = asyncio.ensure_future(quit_queue.get())
        next_tick = loop.time()
        try:
            while not quit:
                delay = max(0.0, next_tick - loop.time())
                done, _ = await asyncio.wait({quit_task}, timeout=delay)
                if quit_task in done:
                    quit = True
                    kill = bool(quit_task.result())
                else:
                    next_tick += interval
                    await self._inspect()

                if kill:
                    break

                try:
                    running = await self.env.ping()
                except Exception:
                    running = True
                if not running:
                    # Fuzzing stopped, most likely because the duration was reached.
                    await self._new_state(CampaignState.ENDED)

                if self.state is CampaignState.ENDED:
                    quit = True
        finally:
            if not quit_task.done():
                quit_task.cancel()

        corpus: bytes | None = None
        if self.state is CampaignState.ENDED and not kill:
            try:
                corpus = await self.env.get_corpus(True)
            except Exception as exc:
                log.warning(
                    "Failed to minimize and download corpus for '%s': %s",
                    self.harness_name,
                    exc,
                )
            if self.project_config.has_sanitizer(Sanitizer.COVERAGE):
                await self._collect_coverage()

        if not kill:
            await self._send_event(CampaignQuit(self.harness_name, corpus))

        log.info(
            "Campaign ended: project='%s' harness='%s' env='%s'",
            self.project_config.name,
            self.harness_name,
            (await self.env.get_id())[:8],
        )