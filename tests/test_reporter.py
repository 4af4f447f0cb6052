import asyncio

import pytest

from fuzzor.reporter import (
    QuittingSolutionReporter,
    SolutionReporter,
    StdErrSolutionReporter,
)
from fuzzor.solutions import Solution


class RecordingReporter(SolutionReporter):
    def __init__(self, fail=False):
        self.reports = []
        self.fail = fail

    async def report_new_solution(self, project, harness, solution):
        self.reports.append((project, harness, solution))
        if self.fail:
            raise RuntimeError("cannot report")


@pytest.mark.asyncio
async def test_stderr_crash(capsys):
    solution = Solution.from_crash(b"\x00\x01", "trace")
    await StdErrSolutionReporter().report_new_solution("proj", "h", solution)
    expected = (
        f"New crash id='{solution.id}' (project='proj' harness='h')\n"
        f"Base64: {solution.input_base64()}\n===== stack trace ===== \ntrace\n"
    )
    assert capsys.readouterr().err == expected


@pytest.mark.asyncio
async def test_stderr_differential_and_timeout(capsys):
    reporter = StdErrSolutionReporter()
    diff = Solution.from_differential_solution(b"d", "stderr text")
    await reporter.report_new_solution("proj", "h", diff)
    err = capsys.readouterr().err
    assert err.startswith("New differential solution (project='proj' harness='h')")
    assert err.endswith("===== stack trace =====\nstderr text\n")

    timeout = Solution.from_timeout(b"t", "<svg/>")
    await reporter.report_new_solution("proj", "h", timeout)
    err = capsys.readouterr().err
    assert err == (
        "New timeout (project='proj' harness='h')\n"
        f"Base64: {timeout.input_base64()}\n"
    )


@pytest.mark.asyncio
async def test_quitting_reporter_forwards_and_quits():
    inner = RecordingReporter()
    queue = asyncio.Queue()
    reporter = QuittingSolutionReporter(inner, queue)
    solution = Solution.from_timeout(b"x", "")
    await reporter.report_new_solution("proj", "h", solution)
    assert inner.reports == [("proj", "h", solution)]
    assert queue.get_nowait() is True


@pytest.mark.asyncio
async def test_quitting_reporter_ignores_inner_failure_and_full_queue():
    inner = RecordingReporter(fail=True)
    queue = asyncio.Queue(maxsize=1)
    reporter = QuittingSolutionReporter(inner, queue)
    solution = Solution.from_timeout(b"x", "")
    await reporter.report_new_solution("proj", "h", solution)
    await reporter.report_new_solution("proj", "h", solution)
    assert len(inner.reports) == 2
    assert queue.qsize() == 1