"""Reporters that publish newly found solutions."""

from __future__ import annotations

import asyncio
import logging
import sys
from abc import ABC, abstractmethod

from fuzzor.solutions import Solution, SolutionKind

log = logging.getLogger(__name__)


class SolutionReporter(ABC):
    @abstractmethod
    async def report_new_solution(self, project: str, harness: str, solution: Solution) -> None:
        """Report a new solution; raise on failure."""


class StdErrSolutionReporter(SolutionReporter):
    """Prints solutions to standard error."""

    async def report_new_solution(self, project: str, harness: str, solution: Solution) -> None:
        encoded = solution.input_base64()
        if solution.kind is SolutionKind.CRASH:
            message = (
                f"New crash id='{solution.id}' (project='{project}' harness='{harness}')\n"
                f"Base64: {encoded}\n===== stack trace ===== \n{solution.details}"
            )
        elif solution.kind is SolutionKind.DIFFERENTIAL:
            message = (
                f"New differential solution (project='{project}' harness='{harness}')\n"
                f"Base64: {encoded}\n===== stack trace =====\n{solution.details}"
            )
        else:
            message = (
                f"New timeout (project='{project}' harness='{harness}')\nBase64: {encoded}"
            )
        print(message, file=sys.stderr)


class QuittingSolutionReporter(SolutionReporter):
    """Reports through another reporter, then signals the project to quit."""

    def __init__(self, inner: SolutionReporter, quit_queue: asyncio.Queue) -> None:
        self.inner = inner
        self.quit_queue = quit_queue

    async def report_new_solution(self, project: str, harness: str, solution: Solution) -> None:
        try:
            await self.inner.report_new_solution(project, harness, solution)
        except Exception as exc:  # the wrapped reporter's failure must not stop the quit
            log.error("Inner reporter failed for project '%s': %s", project, exc)
        try:
            self.quit_queue.put_nowait(True)
        except asyncio.QueueFull:
            pass