"""A fuzzed project: builds new revisions and runs campaigns for its harnesses."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

from fuzzor.builder import ProjectBuild, ProjectBuilder, Revision, RevisionTracker
from fuzzor.campaign import Campaign, CampaignEvent, CampaignQuit, CampaignStats
from fuzzor.description import ProjectDescription
from fuzzor.harness import Harness
from fuzzor.monitor import ProjectEvent, ProjectMonitor
from fuzzor.scheduler import CampaignScheduler, CampaignSchedulerInput, SchedulingError

log = logging.getLogger(__name__)

_QUEUE_SIZE = 16


@dataclass
class ProjectOptions:
    """How a project runs.

    ``ignore_first_revision`` skips the first revision reported by the tracker,
    ``no_fuzzing`` only builds and never schedules campaigns, and
    ``campaign_interval`` overrides the interval at which campaigns inspect
    their environment.
    """

    ignore_first_revision: bool = False
    no_fuzzing: bool = False
    campaign_interval: float | None = None


@dataclass(frozen=True)
class _ScheduledCampaign:
    harness: str
    task: asyncio.Task
    quit_queue: asyncio.Queue


class Project:
    """Ties together builds, the campaign schedule, environments and monitors."""

    def __init__(
        self,
        description: ProjectDescription,
        env_allocator: Any,
        scheduler: CampaignScheduler,
        state: Any,
        options: ProjectOptions | None = None,
    ) -> None:
        self.description = description
        self.config = description.config()
        self.env_allocator = env_allocator
        self.scheduler = scheduler
        self.state = state
        self.options = options or ProjectOptions()
        self.harnesses: dict[str, Harness] = {}
        self.retired_harnesses: dict[str, Harness] = {}
        self.monitors: list[ProjectMonitor] = []
        self._campaigns: dict[str, _ScheduledCampaign] = {}
        self._wake_queue: asyncio.Queue | None = None

    def register_monitor(self, monitor: ProjectMonitor) -> None:
        self.monitors.append(monitor)

    def _wake_scheduler(self) -> None:
        if self._wake_queue is None:
            return
        try:
            self._wake_queue.put_nowait(None)
        except asyncio.QueueFull:
            pass

    async def _notify_project_event(self, event: ProjectEvent) -> None:
        for monitor in self.monitors:
            await monitor.monitor_project_event(self.config.name, event)

    async def _handle_build_result(self, result: ProjectBuild | BaseException) -> None:
        if isinstance(result, BaseException):
            await self._notify_project_event(ProjectEvent.BUILD_FAILURE)
        else:
            await self._handle_new_build(result)

    async def _handle_new_build(self, build: ProjectBuild) -> None:
        current = set(self.harnesses)
        new = build.harnesses - current
        removed = current - build.harnesses

        if new:
            log.info(
                "New harnesses found in latest build for project '%s': %r",
                self.config.name,
                sorted(new),
            )
        if removed:
            log.info(
                "Harnesses removed in latest build for project '%s': %r",
                self.config.name,
                sorted(removed),
            )

        for name in sorted(new):
            # Bring a harness back from retirement or create a new one.
            harness = self.retired_harnesses.pop(name, None)
            if harness is None:
                harness = Harness(name, self.state.create_harness_state(name))
            self.harnesses[name] = harness
            log.debug("Added %s to %s's harnesses", name, self.config.name)

        for name in removed:
            self.retired_harnesses[name] = self.harnesses.pop(name)

        revision: Revision = build.revision
        self.scheduler.sync_schedule(
            CampaignSchedulerInput(
                harnesses=self.harnesses,
                modified_files=list(revision.modified_files),
                commit_hash=revision.commit_hash,
            )
        )
        self._wake_scheduler()

        await self._notify_project_event(ProjectEvent.NEW_BUILD)

    async def _handle_new_campaign(self, scheduled: _ScheduledCampaign) -> None:
        if scheduled.harness in self._campaigns:
            # The same harness can be scheduled twice, e.g. once by coverage and once
            # by the round-robin fallback.
            log.warning(
                "Campaign ('%s') was scheduled twice, stopping the duplicate now!",
                scheduled.harness,
            )
            await scheduled.quit_queue.put(True)
            await self._finish_campaign(scheduled.harness, scheduled.task, None)
        else:
            self._campaigns[scheduled.harness] = scheduled

    async def _finish_campaign(
        self, harness: str, task: asyncio.Task, corpus: bytes | None
    ) -> None:
        try:
            campaign = await task
            await self.env_allocator.free(campaign.env)
        except Exception as exc:
            log.error(
                "Failed to wait for campaign to join (project='%s', harness='%s'): %s",
                self.config.name,
                harness,
                exc,
            )

        if corpus is not None:
            try:
                self.state.corpus_herder.merge(harness, corpus)
            except Exception as exc:
                log.warning(
                    "Could not merge new corpus for project '%s': %s", self.config.name, exc
                )

        try:
            self.scheduler.finish(harness)
        except SchedulingError:
            pass
        self._wake_scheduler()

    async def _handle_campaign_event(self, event: CampaignEvent, quitting_project: bool) -> None:
        log.debug("New campaign event for project '%s': %r", self.config.name, event)

        if isinstance(event, CampaignStats):
            log.debug(
                "%r (harness='%s', project='%s')", event.stats, event.harness, self.config.name
            )
        elif isinstance(event, CampaignQuit):
            scheduled = self._campaigns.pop(event.harness, None)
            if scheduled is not None:
                await self._finish_campaign(event.harness, scheduled.task, event.corpus)
            elif not quitting_project:
                log.error(
                    "Received quit event but the campaign was not found "
                    "(harness=%s, project=%s)",
                    event.harness,
                    self.config.name,
                )

        for monitor in self.monitors:
            await monitor.monitor_campaign_event(self.config.name, event)

    async def _build_loop(
        self,
        revision_tracker: RevisionTracker,
        builder: ProjectBuilder,
        build_queue: asyncio.Queue,
    ) -> None:
        current: Revision | None = None
        ignore_first = self.options.ignore_first_revision
        while True:
            current = await revision_tracker.track(current)
            if ignore_first:
                log.info("Ignoring first revision for project '%s'", self.config.name)
                ignore_first = False
                continue

            result: ProjectBuild | BaseException
            try:
                result = await builder.build(self.description, current)
            except Exception as exc:
                log.error("Build failed for project '%s': %s", self.config.name, exc)
                result = exc
            await build_queue.put(result)

    @staticmethod
    async def _run_campaign(campaign: Campaign, quit_queue: asyncio.Queue) -> Campaign:
        await campaign.run(quit_queue)
        return campaign

    async def _schedule_loop(
        self,
        wake_queue: asyncio.Queue,
        campaign_queue: asyncio.Queue,
        event_queue: asyncio.Queue,
    ) -> None:
        log.info("Starting campaign scheduler task for project '%s'", self.config.name)
        eager = False
        while True:
            if eager:
                log.debug(
                    "Attempting to eagerly schedule the next campaign for project '%s'",
                    self.config.name,
                )
            else:
                await wake_queue.get()
            eager = False

            try:
                params = self.scheduler.next()
            except SchedulingError as exc:
                log.warning(
                    "Campaign scheduling failed for project '%s': %s", self.config.name, exc
                )
                continue

            harness_name = params.harness_name
            harness = self.harnesses.get(harness_name)
            if harness is None:
                log.warning(
                    "Scheduled harness '%s' does not exist in the harness map (project=%s)",
                    harness_name,
                    self.config.name,
                )
                self._finish_quietly(harness_name)
                continue

            log.debug("Scheduled harness '%s' for project '%s'", harness_name, self.config.name)

            try:
                env = await self.env_allocator.alloc(params)
            except Exception as exc:
                log.warning("Could not allocate environment for '%s': %s", harness_name, exc)
                self._finish_quietly(harness_name)
                continue

            try:
                corpus = self.state.corpus_herder.fetch(harness_name)
            except Exception as exc:
                log.debug("No corpus for '%s': %s", harness_name, exc)
            else:
                try:
                    await env.upload_initial_corpus(corpus)
                except Exception as exc:
                    log.warning(
                        "Could not upload initial '%s' corpus for project '%s': %s",
                        harness_name,
                        self.config.name,
                        exc,
                    )

            quit_queue: asyncio.Queue = asyncio.Queue(maxsize=_QUEUE_SIZE)
            campaign = Campaign(
                self.config,
                harness,
                env,
                event_queue,
                params.commit_hash,
                params.duration,
                inspect_interval=self.options.campaign_interval,
            )
            task = asyncio.ensure_future(self._run_campaign(campaign, quit_queue))
            await campaign_queue.put(_ScheduledCampaign(harness_name, task, quit_queue))
            eager = True

    def _finish_quietly(self, harness: str) -> None:
        try:
            self.scheduler.finish(harness)
        except SchedulingError as exc:
            log.warning("Failed to finish scheduled campaign: %s", exc)

    async def run(
        self,
        revision_tracker: RevisionTracker,
        builder: ProjectBuilder,
        quit_queue: asyncio.Queue,
    ) -> Any:
        """Run until a value arrives on ``quit_queue``; return that value."""
        build_queue: asyncio.Queue = asyncio.Queue(maxsize=_QUEUE_SIZE)
        campaign_queue: asyncio.Queue = asyncio.Queue(maxsize=_QUEUE_SIZE)
        event_queue: asyncio.Queue = asyncio.Queue()
        self._wake_queue = asyncio.Queue(maxsize=_QUEUE_SIZE)

        background = [
            asyncio.ensure_future(self._build_loop(revision_tracker, builder, build_queue))
        ]
        if not self.options.no_fuzzing:
            background.append(
                asyncio.ensure_future(
                    self._schedule_loop(self._wake_queue, campaign_queue, event_queue)
                )
            )

        async def on_event(event: CampaignEvent) -> None:
            await self._handle_campaign_event(event, False)

        sources: dict[str, tuple[asyncio.Queue, Callable[[Any], Awaitable[None]]]] = {
            "build": (build_queue, self._handle_build_result),
            "campaign": (campaign_queue, self._handle_new_campaign),
            "event": (event_queue, on_event),
        }
        getters = {name: asyncio.ensure_future(queue.get()) for name, (queue, _) in sources.items()}
        quit_getter = asyncio.ensure_future(quit_queue.get())

        try:
            while True:
                done, _ = await asyncio.wait(
                    [*getters.values(), quit_getter], return_when=asyncio.FIRST_COMPLETED
                )
                for name, (queue, handler) in sources.items():
                    getter = getters[name]
                    if getter in done:
                        item = getter.result()
                        getters[name] = asyncio.ensure_future(queue.get())
                        await handler(item)
                if quit_getter in done:
                    result = quit_getter.result()
                    break
        finally:
            for getter in [*getters.values(), quit_getter]:
                if not getter.done():
                    getter.cancel()

        log.info("Quitting project '%s'", self.config.name)

        self._wake_queue = None
        for task in background:
            task.cancel()
        await asyncio.gather(*background, return_exceptions=True)

        active = list(self._campaigns.values())
        self._campaigns.clear()
        while not campaign_queue.empty():
            active.append(campaign_queue.get_nowait())

        for scheduled in active:
            await scheduled.quit_queue.put(False)
            try:
                campaign = await scheduled.task
                await self.env_allocator.free(campaign.env)
            except Exception as exc:
                log.warning("Couldn't free env for campaign: %s", exc)

        while not event_queue.empty():
            await self._handle_campaign_event(event_queue.get_nowait(), True)

        return result