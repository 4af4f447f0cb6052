"""Project monitors that react to campaign and project events."""

from __future__ import annotations

import asyncio
import enum
import logging

from fuzzor.campaign import CampaignEvent, NewSolution
from fuzzor.reporter import SolutionReporter

log = logging.getLogger(__name__)


class ProjectEvent(enum.Enum):
    NEW_BUILD = "NewBuild"
    BUILD_FAILURE = "BuildFailure"


class ProjectMonitor:
    """Observer of a project's events; both hooks do nothing by default."""

    async def monitor_campaign_event(self, project: str, event: CampaignEvent) -> None:
        """Called for every campaign event of the project."""

    async def monitor_project_event(self, project: str, event: ProjectEvent) -> None:
        """Called for every project event."""


class SolutionReportingMonitor(ProjectMonitor):
    """Relays new solutions to a solution reporter."""

    def __init__(self, reporter: SolutionReporter) -> None:
        self.reporter = reporter

    async def monitor_campaign_event(self, project: str, event: CampaignEvent) -> None:
        if not isinstance(event, NewSolution):
            return
        try:
            await self.reporter.report_new_solution(project, event.harness, event.solution)
        except Exception as exc:
            log.error("Could not report new solution for project '%s': %s", project, exc)


class QuittingBuildFailureMonitor(ProjectMonitor):
    """Asks the project to quit (with an error) when a build fails."""

    def __init__(self, quit_queue: asyncio.Queue) -> None:
        self.quit_queue = quit_queue

    async def monitor_project_event(self, project: str, event: ProjectEvent) -> None:
        if event is ProjectEvent.BUILD_FAILURE:
            try:
                self.quit_queue.put_nowait(True)
            except asyncio.QueueFull:
                pass