"""Fuzz solutions (crashes, timeouts, differentials) and trackers for them."""

from __future__ import annotations

import base64
import binascii
import enum
import hashlib
import logging
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import yaml

log = logging.getLogger(__name__)

_FRAME = re.compile(r"^\s*#\d+\s+0x[0-9a-fA-F]+\s+in\s+(?P<func>.+?)\s*$")


def _function_name(frame: str) -> str:
    head, _, location = frame.rpartition(" ")
    if head and ("/" in location or location.startswith("(")):
        return head
    return frame


def _crash_dedup_id(stack_trace: str) -> str | None:
    """Hash the frames of a sanitizer report, or None if it does not look like one."""
    header_seen = False
    frames: list[str] = []
    for line in stack_trace.splitlines():
        if not header_seen:
            header_seen = line.startswith("==")
            continue
        if line.startswith("SUMMARY"):
            return hashlib.sha1("\n".join(frames).encode()).hexdigest()
        match = _FRAME.match(line)
        if match:
            frames.append(_function_name(match.group("func")))
    return None


class SolutionKind(enum.Enum):
    """Kind of a solution; the value is its serialized tag."""

    CRASH = "Crash"
    TIMEOUT = "Timeout"
    DIFFERENTIAL = "Differential"


@dataclass(frozen=True)
class Solution:
    """An interesting fuzz input together with what it triggered.

    ``id`` is the deduplication key, ``unique_id`` the SHA-1 of the input and
    ``details`` the stack trace (crashes, differentials) or flame graph (timeouts).
    """

    id: str
    unique_id: str
    input_bytes: bytes
    kind: SolutionKind
    details: str

    @staticmethod
    def _unique_id(input_bytes: bytes) -> str:
        return hashlib.sha1(input_bytes).hexdigest()

    @classmethod
    def from_crash(cls, input_bytes: bytes, stack_trace: str) -> Solution:
        input_bytes = bytes(input_bytes)
        return cls(
            id=_crash_dedup_id(stack_trace) or "crash",
            unique_id=cls._unique_id(input_bytes),
            input_bytes=input_bytes,
            kind=SolutionKind.CRASH,
            details=stack_trace,
        )

    @classmethod
    def from_timeout(cls, input_bytes: bytes, flamegraph: str) -> Solution:
        # Timeouts have no stack trace, so only one timeout per harness is tracked.
        input_bytes = bytes(input_bytes)
        return cls(
            id="timeout",
            unique_id=cls._unique_id(input_bytes),
            input_bytes=input_bytes,
            kind=SolutionKind.TIMEOUT,
            details=flamegraph,
        )

    @classmethod
    def from_differential_solution(cls, input_bytes: bytes, stderr: str) -> Solution:
        input_bytes = bytes(input_bytes)
        return cls(
            id="differential",
            unique_id=cls._unique_id(input_bytes),
            input_bytes=input_bytes,
            kind=SolutionKind.DIFFERENTIAL,
            details=stderr,
        )

    def input_base64(self) -> str:
        return base64.b64encode(self.input_bytes).decode("ascii")

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "unique_id": self.unique_id,
            "input_bytes": self.input_base64(),
            "metadata": {self.kind.value: self.details},
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Solution:
        if not isinstance(data, dict):
            raise ValueError("solution must be a mapping")
        try:
            metadata = data["metadata"]
            if not isinstance(metadata, dict) or len(metadata) != 1:
                raise ValueError("solution metadata must hold exactly one entry")
            ((tag, details),) = metadata.items()
            return cls(
                id=str(data["id"]),
                unique_id=str(data["unique_id"]),
                input_bytes=base64.b64decode(data["input_bytes"], validate=True),
                kind=SolutionKind(tag),
                details=str(details),
            )
        except (KeyError, TypeError, binascii.Error) as exc:
            raise ValueError(f"invalid solution: {exc}") from exc


class SolutionTracker(ABC):
    """Keeps the open solutions of a harness, keyed by deduplication id."""

    @abstractmethod
    def mark_as_resolved(self, id: str) -> Solution | None:
        """Remove and return the solution, e.g. once its bug was fixed."""

    @abstractmethod
    def submit(self, solution: Solution) -> bool:
        """Store a solution; return whether it was new."""

    @abstractmethod
    def get_open(self, id: str) -> Solution | None:
        """Return an open solution by its deduplication id."""

    @abstractmethod
    def get_all(self) -> list[Solution]:
        """Return all open solutions."""


class InMemorySolutionTracker(SolutionTracker):
    def __init__(self) -> None:
        self._solutions: dict[str, Solution] = {}

    def mark_as_resolved(self, id: str) -> Solution | None:
        return self._solutions.pop(id, None)

    def submit(self, solution: Solution) -> bool:
        # A duplicate overwrites the previously stored solution.
        is_new = solution.id not in self._solutions
        self._solutions[solution.id] = solution
        return is_new

    def get_open(self, id: str) -> Solution | None:
        return self._solutions.get(id)

    def get_all(self) -> list[Solution]:
        return list(self._solutions.values())


def _solution_file_name(solution: Solution) -> str:
    return f"solution-{solution.id}"


class OnDiskSolutionTracker(SolutionTracker):
    """Solution tracker persisting each solution as a YAML file in a directory."""

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)
        self.path.mkdir(parents=True, exist_ok=True)
        self._cache = InMemorySolutionTracker()
        for entry in sorted(self.path.iterdir()):
            if entry.is_file():
                self._load(entry)

    def _load(self, path: Path) -> None:
        try:
            solution = Solution.from_dict(yaml.safe_load(path.read_text()))
        except (OSError, UnicodeDecodeError, yaml.YAMLError, ValueError) as exc:
            log.debug("Skipping %s: %s", path, exc)
            return
        self._cache.submit(solution)

    def mark_as_resolved(self, id: str) -> Solution | None:
        solution = self._cache.mark_as_resolved(id)
        if solution is not None:
            try:
                (self.path / _solution_file_name(solution)).unlink()
            except OSError as exc:
                log.error("Could not remove solution file from disk: %s", exc)
        return solution

    def submit(self, solution: Solution) -> bool:
        is_new = self._cache.submit(solution)
        document = yaml.safe_dump(solution.to_dict(), sort_keys=False)
        (self.path / _solution_file_name(solution)).write_text(document)
        return is_new

    def get_open(self, id: str) -> Solution | None:
        return self._cache.get_open(id)

    def get_all(self) -> list[Solution]:
        return self._cache.get_all()