import io
import tarfile
from pathlib import PurePosixPath

import pytest

from fuzzor.state import OverwritingCorpusHerder, StdProjectState


def make_tar(files: dict[str, bytes]) -> bytes:
    buffer = io.BytesIO()
    with tarfile.open(fileobj=buffer, mode="w") as tar:
        for name, data in files.items():
            info = tarfile.TarInfo(name)
            info.size = len(data)
            tar.addfile(info, io.BytesIO(data))
    return buffer.getvalue()


def read_tar(data: bytes) -> dict[str, bytes]:
    result = {}
    with tarfile.open(fileobj=io.BytesIO(data)) as tar:
        for member in tar:
            if member.isfile():
                result[PurePosixPath(member.name).name] = tar.extractfile(member).read()
    return result


def test_merge_flattens_inputs(tmp_path):
    herder = OverwritingCorpusHerder(tmp_path / "corpora")
    herder.merge("h1", make_tar({"a": b"one", "sub/dir/b": b"two"}))
    corpus_dir = tmp_path / "corpora" / "h1"
    assert sorted(p.name for p in corpus_dir.iterdir()) == ["a", "b"]
    assert (corpus_dir / "b").read_bytes() == b"two"


def test_merge_fetch_round_trip(tmp_path):
    herder = OverwritingCorpusHerder(tmp_path)
    files = {"x": b"\x00\x01", "y": b"hello"}
    herder.merge("harness", make_tar(files))
    assert read_tar(herder.fetch("harness")) == files


def test_merge_overwrites_existing_corpus(tmp_path):
    herder = OverwritingCorpusHerder(tmp_path)
    herder.merge("h", make_tar({"old": b"1"}))
    herder.merge("h", make_tar({"new": b"2"}))
    assert read_tar(herder.fetch("h")) == {"new": b"2"}


def test_fetch_unknown_harness_raises(tmp_path):
    herder = OverwritingCorpusHerder(tmp_path)
    with pytest.raises(FileNotFoundError):
        herder.fetch("missing")


def test_create_harness_state_location(tmp_path):
    herder = OverwritingCorpusHerder(tmp_path / "corpora")
    state = StdProjectState(tmp_path / "proj", herder)
    harness_state = state.create_harness_state("fuzz_target")
    expected = tmp_path / "proj" / "harnesses" / "fuzz_target"
    assert harness_state.path == expected
    assert expected.is_dir()
    assert state.corpus_herder is herder
    assert state.last_build_rev is None


def test_created_harness_state_persists(tmp_path):
    state = StdProjectState(tmp_path, OverwritingCorpusHerder(tmp_path / "c"))
    state.create_harness_state("h").set_covered_files(["src/a.cpp"])
    reloaded = state.create_harness_state("h")
    assert reloaded.covered_files() == {"src/a.cpp"}