"""Project state: corpus storage and per-harness state creation."""

from __future__ import annotations

import io
import logging
import shutil
import tarfile
from abc import ABC, abstractmethod
from pathlib import Path, PurePosixPath

from fuzzor.harness import PersistentHarnessState

log = logging.getLogger(__name__)


class CorpusHerder(ABC):
    """A single source of corpora for the harnesses of a project."""

    @abstractmethod
    def merge(self, harness: str, corpus: bytes) -> None:
        """Merge a corpus tarball into the stored corpus of a harness."""

    @abstractmethod
    def fetch(self, harness: str) -> bytes:
        """Return the latest corpus of a harness as a tarball."""


class OverwritingCorpusHerder(CorpusHerder):
    """Stores corpora on disk, one subdirectory per harness.

    A merge never combines inputs: it replaces the stored corpus with the one given.
    """

    def __init__(self, corpora_dir: str | Path) -> None:
        self.corpora_dir = Path(corpora_dir)
        self.corpora_dir.mkdir(parents=True, exist_ok=True)

    def corpus_dir(self, harness: str) -> Path:
        return self.corpora_dir / harness

    def merge(self, harness: str, corpus: bytes) -> None:
        corpus_dir = self.corpus_dir(harness)
        try:
            shutil.rmtree(corpus_dir)
        except FileNotFoundError:
            pass
        except OSError as exc:
            log.warning("Could not remove old corpus directory %s: %s", corpus_dir, exc)
        corpus_dir.mkdir(parents=True, exist_ok=True)

        with tarfile.open(fileobj=io.BytesIO(corpus)) as archive:
            for member in archive:
                if not member.isfile():
                    continue
                name = PurePosixPath(member.name).name
                data = archive.extractfile(member)
                if not name or data is None:
                    continue
                input_path = corpus_dir / name
                try:
                    input_path.write_bytes(data.read())
                except OSError as exc:
                    log.debug("Could not unpack fuzz input %s: %s", input_path, exc)
                else:
                    log.debug("Unpacked fuzz input to: %s", input_path)

    def fetch(self, harness: str) -> bytes:
        corpus_dir = self.corpus_dir(harness)
        buffer = io.BytesIO()
        with tarfile.open(fileobj=buffer, mode="w", format=tarfile.GNU_FORMAT) as tar:
            tar.add(corpus_dir, arcname=".")
        return buffer.getvalue()


class StdProjectState:
    """State of a project kept under a directory, with a shared corpus herder."""

    def __init__(self, path: str | Path, corpus_herder: CorpusHerder) -> None:
        self.path = Path(path)
        self.corpus_herder = corpus_herder
        self.last_build_rev: str | None = None

    def create_harness_state(self, harness: str) -> PersistentHarnessState:
        return PersistentHarnessState(self.path / "harnesses" / harness)