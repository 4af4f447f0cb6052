import asyncio
import io
import json
import tarfile
from datetime import timedelta

import pytest

from fuzzor.campaign import (
    Campaign,
    CampaignInitialized,
    CampaignQuit,
    CampaignState,
    CampaignStateChanged,
    CampaignStats,
    NewSolution,
    ResolvedSolution,
)
from fuzzor.config import FuzzerStats, ProjectConfig, Sanitizer
from fuzzor.env import Environment
from fuzzor.harness import Harness, PersistentHarnessState
from fuzzor.solutions import Solution

ENV_ID = "container-0123456789abcdef"


class FakeEnv(Environment):
    def __init__(
        self,
        stats=None,
        pings=None,
        solutions=None,
        reproduce=None,
        corpus=b"corpus-tar",
    ):
        self.stats = list(stats or [FuzzerStats(execs_per_sec=1.0, corpus_count=1)])
        self.pings = list(pings or [])
        self.solutions = list(solutions or [])
        self.reproduce = reproduce
        self.corpus = corpus
        self.preserve = False
        self.started = False
        self.corpus_calls = 0
        self.covered_files = []
        self.covered_functions = []
        self.report = b""
        self.summary = b""

    async def get_id(self):
        return ENV_ID

    async def get_num_cpus(self):
        return 2

    async def get_stats(self):
        if len(self.stats) > 1:
            return self.stats.pop(0)
        return self.stats[0]

    async def get_solutions(self):
        return list(self.solutions)

    async def reproduce_solutions(self, solutions):
        if self.reproduce is None:
            return list(solutions)
        return list(self.reproduce)

    async def get_corpus(self, minimize):
        self.corpus_calls += 1
        return self.corpus

    async def get_covered_files(self):
        return self.covered_files

    async def get_covered_functions(self):
        return self.covered_functions

    async def get_coverage_report(self):
        return self.report

    async def get_coverage_summary(self):
        return self.summary

    async def upload_initial_corpus(self, corpus):
        return None

    async def start(self):
        self.started = True

    async def shutdown(self):
        return True

    async def ping(self):
        if self.pings:
            return self.pings.pop(0)
        return True

    async def set_preserve(self, preserve):
        self.preserve = preserve


def drain(queue):
    events = []
    while not queue.empty():
        events.append(queue.get_nowait())
    return events


@pytest.fixture
def harness(tmp_path):
    return Harness("h1", PersistentHarnessState(tmp_path / "h1"))


def make_campaign(harness, env, config=None, interval=0.01):
    config = config or ProjectConfig(name="proj", owner="owner", repo="repo")
    events = asyncio.Queue()
    campaign = Campaign(
        config, harness, env, events, "abc123", timedelta(hours=1), inspect_interval=interval
    )
    return campaign, events


@pytest.mark.asyncio
async def test_campaign_ends_when_fuzzing_stops(harness, tmp_path):
    env = FakeEnv(stats=[FuzzerStats(execs_per_sec=10.0, corpus_count=5)], pings=[False])
    campaign, events = make_campaign(harness, env)
    await asyncio.wait_for(campaign.run(asyncio.Queue()), 5)

    got = drain(events)
    assert [type(e) for e in got] == [
        CampaignInitialized,
        CampaignStateChanged,
        CampaignStats,
        CampaignStateChanged,
        CampaignQuit,
    ]
    assert got[1].old is CampaignState.SCHEDULED and got[1].new is CampaignState.FUZZING
    assert got[3].new is CampaignState.ENDED
    assert got[-1] == CampaignQuit("h1", b"corpus-tar")
    assert campaign.state is CampaignState.ENDED
    assert env.started

    campaign_dir = tmp_path / "h1" / "campaigns" / ENV_ID
    params = json.loads((campaign_dir / "startup_params.json").read_text())
    assert params["num_cpus"] == 2
    assert params["duration_secs"] == 3600
    assert params["commit_hash"] == "abc123"
    assert len((campaign_dir / "stats.txt").read_text().splitlines()) == 1


@pytest.mark.asyncio
async def test_kill_skips_corpus_and_quit_event(harness):
    env = FakeEnv()
    campaign, events = make_campaign(harness, env, interval=60)
    quit_queue = asyncio.Queue()
    task = asyncio.create_task(campaign.run(quit_queue))
    await asyncio.sleep(0.05)
    await quit_queue.put(True)
    await asyncio.wait_for(task, 5)

    got = drain(events)
    assert not any(isinstance(e, CampaignQuit) for e in got)
    assert isinstance(got[0], CampaignInitialized)
    assert env.corpus_calls == 0


@pytest.mark.asyncio
async def test_graceful_quit_sends_quit_without_corpus(harness):
    env = FakeEnv()
    campaign, events = make_campaign(harness, env, interval=60)
    quit_queue = asyncio.Queue()
    task = asyncio.create_task(campaign.run(quit_queue))
    await asyncio.sleep(0.05)
    await quit_queue.put(False)
    await asyncio.wait_for(task, 5)

    got = drain(events)
    assert got[-1] == CampaignQuit("h1", None)
    assert campaign.state is CampaignState.FUZZING
    assert env.corpus_calls == 0


@pytest.mark.asyncio
async def test_new_crash_is_stored_and_ends_campaign(harness):
    crash = Solution.from_crash(b"x", "")
    env = FakeEnv(
        stats=[FuzzerStats(execs_per_sec=1.0, saved_crashes=1, corpus_count=3)],
        solutions=[crash],
    )
    campaign, events = make_campaign(harness, env)
    await asyncio.wait_for(campaign.run(asyncio.Queue()), 5)

    got = drain(events)
    assert NewSolution("h1", crash) in got
    assert campaign.state is CampaignState.ENDED
    assert harness.state.solutions().get_open(crash.id) == crash
    assert isinstance(got[-1], CampaignQuit)
    assert not env.preserve


@pytest.mark.asyncio
async def test_unreproduced_crashes_preserve_env(harness):
    env = FakeEnv(
        stats=[FuzzerStats(execs_per_sec=1.0, saved_crashes=2, corpus_count=3)],
        solutions=[],
    )
    campaign, events = make_campaign(harness, env)
    await asyncio.wait_for(campaign.run(asyncio.Queue()), 5)

    assert env.preserve is True
    assert campaign.state is CampaignState.ENDED
    assert not any(isinstance(e, NewSolution) for e in drain(events))


@pytest.mark.asyncio
async def test_resolved_solution_is_removed(harness):
    old = Solution.from_timeout(b"slow", "graph")
    harness.state.solutions().submit(old)
    env = FakeEnv(reproduce=[], pings=[False])
    campaign, events = make_campaign(harness, env)
    await asyncio.wait_for(campaign.run(asyncio.Queue()), 5)

    got = drain(events)
    assert ResolvedSolution("h1", old) in got
    assert harness.state.solutions().get_all() == []


@pytest.mark.asyncio
async def test_still_reproducing_solution_quits_immediately(harness):
    old = Solution.from_timeout(b"slow", "graph")
    harness.state.solutions().submit(old)
    env = FakeEnv(reproduce=[old])
    campaign, events = make_campaign(harness, env)
    await asyncio.wait_for(campaign.run(asyncio.Queue()), 5)

    got = drain(events)
    assert [type(e) for e in got] == [CampaignInitialized, CampaignQuit]
    assert got[-1].corpus is None
    assert harness.state.solutions().get_all() == [old]


@pytest.mark.asyncio
async def test_stats_reported_only_when_corpus_grows(harness):
    env = FakeEnv(
        stats=[
            FuzzerStats(execs_per_sec=1.0, corpus_count=5),
            FuzzerStats(execs_per_sec=1.0, corpus_count=5),
            FuzzerStats(execs_per_sec=1.0, corpus_count=6),
            FuzzerStats(execs_per_sec=1.0, corpus_count=6),
        ],
        pings=[True, True, True, False],
    )
    campaign, events = make_campaign(harness, env)
    await asyncio.wait_for(campaign.run(asyncio.Queue()), 5)

    reported = [e.stats.corpus_count for e in drain(events) if isinstance(e, CampaignStats)]
    assert reported == [5, 6]


@pytest.mark.asyncio
async def test_coverage_is_collected_with_coverage_sanitizer(harness, tmp_path):
    buffer = io.BytesIO()
    with tarfile.open(fileobj=buffer, mode="w") as tar:
        data = b"<html></html>"
        info = tarfile.TarInfo("coverage_report/index.html")
        info.size = len(data)
        tar.addfile(info, io.BytesIO(data))

    env = FakeEnv(pings=[False])
    env.covered_files = ["src/foo.cpp"]
    env.covered_functions = ["ns::foo"]
    env.report = buffer.getvalue()
    env.summary = b'{"data": []}'
    config = ProjectConfig(
        name="proj", owner="owner", repo="repo", sanitizers=[Sanitizer.COVERAGE]
    )
    campaign, _ = make_campaign(harness, env, config=config)
    await asyncio.wait_for(campaign.run(asyncio.Queue()), 5)

    assert harness.state.covers_file("foo.cpp")
    assert harness.state.covers_function("foo")
    assert (tmp_path / "h1" / "coverage_report" / "index.html").exists()
    summary_path = tmp_path / "h1" / "campaigns" / ENV_ID / "coverage-summary.json"
    assert summary_path.read_bytes() == b'{"data": []}'


@pytest.mark.asyncio
async def test_invalid_interval_env_var(harness, monkeypatch):
    monkeypatch.setenv("FUZZOR_CAMPAIGN_INTERVAL", "soon")
    env = FakeEnv()
    campaign, _ = make_campaign(harness, env, interval=None)
    with pytest.raises(ValueError):
        await asyncio.wait_for(campaign.run(asyncio.Queue()), 5)