"""Fuzz harnesses and their persistent state."""

from __future__ import annotations

import io
import json
import logging
import shutil
import tarfile
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterable

from fuzzor.config import CampaignStartupParams, FuzzerStats
from fuzzor.solutions import OnDiskSolutionTracker, SolutionTracker

log = logging.getLogger(__name__)

COVERED_FILES = "covered_files.txt"
COVERED_FUNCTIONS = "covered_functions.txt"


class HarnessState(ABC):
    """What is known about a harness across campaigns."""

    @abstractmethod
    def solutions(self) -> SolutionTracker:
        """The solution store of the harness."""

    @abstractmethod
    def set_covered_files(self, covered_files: Iterable[str]) -> None:
        """Store the file names the harness reaches through fuzzing."""

    @abstractmethod
    def covered_files(self) -> set[str]:
        """File names the harness reaches through fuzzing."""

    @abstractmethod
    def covers_file(self, file: str) -> bool:
        """Whether a file is reached by the harness."""

    @abstractmethod
    def set_covered_functions(self, covered_functions: Iterable[str]) -> None:
        """Store the function names the harness reaches through fuzzing."""

    @abstractmethod
    def covered_functions(self) -> set[str]:
        """Function names the harness reaches through fuzzing."""

    @abstractmethod
    def covers_function(self, function: str) -> bool:
        """Whether a function is reached by the harness."""

    @abstractmethod
    def store_coverage_report(self, tar: bytes) -> None:
        """Store a coverage report tarball."""

    @abstractmethod
    def store_coverage_summary(self, campaign_id: str, summary: bytes) -> None:
        """Store the coverage summary of a campaign."""

    @abstractmethod
    def store_startup_params(self, campaign_id: str, params: CampaignStartupParams) -> None:
        """Store the startup parameters of a campaign."""

    @abstractmethod
    def record_stats(self, campaign_id: str, stats: FuzzerStats) -> None:
        """Record stats of a campaign."""


@dataclass
class Harness:
    name: str
    state: HarnessState


def _read_lines(path: Path) -> set[str]:
    try:
        return set(path.read_text().splitlines())
    except FileNotFoundError:
        return set()


def _format_float(value: float) -> str:
    return str(int(value)) if value.is_integer() else repr(value)


def _format_stability(value: float | None) -> str:
    return "None" if value is None else f"Some({float(value)!r})"


class PersistentHarnessState(HarnessState):
    """Harness state kept in a directory on disk."""

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)
        self.path.mkdir(parents=True, exist_ok=True)
        self._covered_files = _read_lines(self.path / COVERED_FILES)
        self._covered_functions = _read_lines(self.path / COVERED_FUNCTIONS)
        self._solutions = OnDiskSolutionTracker(self.path / "solutions")

    def _campaign_dir(self, campaign_id: str) -> Path:
        return self.path / "campaigns" / campaign_id

    def _write_lines(self, name: str, lines: list[str], what: str) -> None:
        try:
            self.path.mkdir(parents=True, exist_ok=True)
            (self.path / name).write_text("".join(f"{line}\n" for line in lines))
        except OSError as exc:
            log.error("Could not save covered %s to %s: %s", what, self.path, exc)

    def solutions(self) -> SolutionTracker:
        return self._solutions

    def set_covered_files(self, covered_files: Iterable[str]) -> None:
        files = list(covered_files)
        self._write_lines(COVERED_FILES, files, "files")
        self._covered_files = set(files)

    def covered_files(self) -> set[str]:
        return set(self._covered_files)

    def covers_file(self, file: str) -> bool:
        return any(covered.endswith(file) for covered in self._covered_files)

    def set_covered_functions(self, covered_functions: Iterable[str]) -> None:
        functions = list(covered_functions)
        self._write_lines(COVERED_FUNCTIONS, functions, "functions")
        self._covered_functions = set(functions)

    def covered_functions(self) -> set[str]:
        return set(self._covered_functions)

    def covers_function(self, function: str) -> bool:
        return any(covered.endswith(function) for covered in self._covered_functions)

    def store_coverage_report(self, tar: bytes) -> None:
        report_dir = self.path / "coverage_report"
        try:
            shutil.rmtree(report_dir)
        except FileNotFoundError:
            pass
        except OSError as exc:
            log.warning("Could not remove old coverage report directory %s: %s", report_dir, exc)

        extract_options = {"filter": "data"} if hasattr(tarfile, "data_filter") else {}
        try:
            with tarfile.open(fileobj=io.BytesIO(tar)) as archive:
                archive.extractall(self.path, **extract_options)
        except (tarfile.TarError, OSError) as exc:
            log.warning("Could not unpack coverage report: %s", exc)

    def store_coverage_summary(self, campaign_id: str, summary: bytes) -> None:
        campaign_dir = self._campaign_dir(campaign_id)
        summary_path = campaign_dir / "coverage-summary.json"
        try:
            campaign_dir.mkdir(parents=True, exist_ok=True)
            summary_path.write_bytes(summary)
        except OSError as exc:
            log.error("Could not write coverage summary to %s: %s", summary_path, exc)

    def store_startup_params(self, campaign_id: str, params: CampaignStartupParams) -> None:
        campaign_dir = self._campaign_dir(campaign_id)
        params_path = campaign_dir / "startup_params.json"
        try:
            campaign_dir.mkdir(parents=True, exist_ok=True)
            params_path.write_text(json.dumps(params.to_dict(), indent=2))
        except OSError as exc:
            log.error("Could not write startup params to %s: %s", params_path, exc)

    def record_stats(self, campaign_id: str, stats: FuzzerStats) -> None:
        campaign_dir = self._campaign_dir(campaign_id)
        timestamp = datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")
        line = (
            f"{timestamp},{_format_stability(stats.stability)},"
            f"{_format_float(float(stats.execs_per_sec))},{stats.corpus_count}\n"
        )
        try:
            campaign_dir.mkdir(parents=True, exist_ok=True)
            with (campaign_dir / "stats.txt").open("a") as stats_file:
                stats_file.write(line)
        except OSError as exc:
            log.error("Could not write to stats file: %s", exc)