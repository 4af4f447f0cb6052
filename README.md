# fuzzor

fuzzor is an asyncio toolkit for running continuous fuzzing campaigns against a
project. It decides which harnesses to fuzz next and runs each one as a
campaign inside an environment. It records the crashes, timeouts and
differential findings that reproduce, and keeps the corpus of each harness
between runs.

## Installation

```
pip install .
```

To install the test dependencies and run the tests:

```
pip install ".[test]"
pytest
```

## Validating a project configuration

A project is a directory that holds a `config.yaml` and a `Dockerfile`. The
following command checks that the engines and sanitizers in a configuration
can be used together:

```
fuzzor-validate-config path/to/config.yaml
```

If the file cannot be read, is not valid YAML, or breaks one of the rules
below, the command prints the reason to stderr and exits with status 1.
Otherwise it exits with status 0.

- Go projects may use only the `NativeGo` engine.
- Rust projects must include `LibFuzzer`.
- `ValueProfile` requires `LibFuzzer`.
- `CmpLog` requires `AflPlusPlus`.
- `Coverage` requires the `None` engine.
- The `SemSan` engine requires at least one `SemSan(n)` sanitizer.

The same checks are available from Python as `fuzzor.config.validate_config`.
It raises `ConfigError` on the first rule that is broken.

## Modules

- `fuzzor.config` contains `ProjectConfig` (with `from_yaml`, `to_yaml` and
  `has_sanitizer`), along with `Language`, `FuzzEngine`, `Sanitizer`,
  `FuzzerStats`, `CampaignStartupParams`, `ConfigError`, `validate_config`
  and `main`.
- `fuzzor.solutions` contains `Solution` and `SolutionKind`.
  - `Solution.from_crash` sets the deduplication id to a SHA-1 hash of the
    function frames in a sanitizer report. If the trace does not look like a
    report, the id is `"crash"`.
  - Every timeout shares the id `"timeout"`, and every differential finding
    shares the id `"differential"`.
  - `unique_id` is the SHA-1 hash of the input.
  - Solutions are stored by `InMemorySolutionTracker`, or by
    `OnDiskSolutionTracker`, which writes one YAML file per deduplication id.
- `fuzzor.reporter` provides two reporters:
  - `StdErrSolutionReporter` prints new solutions to stderr.
  - `QuittingSolutionReporter` passes a solution to another reporter and then
    puts `True` on a quit queue.
- `fuzzor.env` defines the abstract `Environment` and `EnvironmentAllocator`
  interfaces and the `EnvironmentParams` dataclass. It also provides
  `ResourcePool`, an async FIFO pool in which takers wait their turn until
  enough resources are free.
- `fuzzor.builder` contains `Revision`, `ProjectBuild`, and the abstract
  `RevisionTracker` and `ProjectBuilder`.
- `fuzzor.description` provides two project descriptions:
  - `ProjectFolder` describes a project directory on disk.
  - `InMemoryProjectFolder` has a config that can be edited. Its tarball
    carries a `config.yaml` regenerated from that config.
- `fuzzor.harness` contains `Harness` and `PersistentHarnessState`. The state
  holds the files and functions the harness covers, its solutions, coverage
  reports and summaries, the startup parameters of each campaign, and a
  `stats.txt` log for each campaign.
- `fuzzor.state` contains `OverwritingCorpusHerder` and `StdProjectState`.
  - `OverwritingCorpusHerder` keeps one directory per harness. Each merge
    replaces the stored corpus with the new one.
  - `StdProjectState` creates the state for each harness under its directory.
- `fuzzor.scheduler` contains `RoundRobinCampaignScheduler`,
  `CoverageBasedScheduler` (which can use a round-robin fallback) and
  `OneShotScheduler`. It raises `SchedulingError` when there is nothing to
  schedule.
- `fuzzor.campaign` contains `Campaign` and the events it emits:
  `CampaignInitialized`, `CampaignStateChanged`, `NewSolution`,
  `ResolvedSolution`, `CampaignStats` and `CampaignQuit`.
- `fuzzor.monitor` contains `ProjectEvent`, `ProjectMonitor`,
  `SolutionReportingMonitor` and `QuittingBuildFailureMonitor`.
- `fuzzor.project` contains `Project` and `ProjectOptions`.
  - `Project.run` connects a revision tracker, a builder, a scheduler, an
    environment allocator and any registered monitors.
  - It runs until a value arrives on its quit queue, and then returns that
    value.

## Example

```python
import asyncio

from fuzzor.env import ResourcePool


async def demo():
    cores = ResourcePool([0, 1, 2, 3])
    first = await cores.take_one()          # 0
    rest = await cores.take_many(3)         # [1, 2, 3]
    await cores.add_many([first, *rest])
    return first, rest


asyncio.run(demo())
```

## Environment variables

- `FUZZOR_CAMPAIGN_INTERVAL` sets the number of seconds between inspections
  of a running campaign. It must be a positive integer, and the default is 60.
  `ProjectOptions.campaign_interval`, or the `inspect_interval` argument of
  `Campaign`, takes precedence over it.

## What is not included

The orchestration logic is complete, but the package ships only abstract
interfaces for the parts that talk to the outside world. To run a project you
must supply:

- An `Environment` and `EnvironmentAllocator` that actually run fuzzers, for
  example in containers.
- A `ProjectBuilder` that builds images and lists their harnesses.
- A `RevisionTracker` that watches a repository for new commits.
- Any reporter that publishes solutions somewhere other than stderr.

There is no command that fuzzes a project from start to finish. The only
command is `fuzzor-validate-config`. `OverwritingCorpusHerder` stores only the
latest corpus of each harness and keeps no history of earlier ones.