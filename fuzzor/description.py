"""Project descriptions: the sources and config needed to build a project."""

from __future__ import annotations

import copy
import io
import logging
import tarfile
from abc import ABC, abstractmethod
from pathlib import Path, PurePosixPath

from fuzzor.config import ProjectConfig

log = logging.getLogger(__name__)

CONFIG_FILE = "config.yaml"
DOCKER_FILE = "Dockerfile"


class ProjectDescription(ABC):
    @abstractmethod
    def tarball(self) -> bytes:
        """Tarball of everything needed (sources, config, ...) to build the project."""

    @abstractmethod
    def config(self) -> ProjectConfig:
        """The project config."""


def _is_config_entry(name: str) -> bool:
    return PurePosixPath(name) == PurePosixPath(CONFIG_FILE)


class ProjectFolder(ProjectDescription):
    """A project on disk: a folder holding at least a Dockerfile and a config.yaml."""

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)
        if not self.path.is_dir():
            raise NotADirectoryError(f"Project path has to be a directory: {self.path}")
        missing = [name for name in (CONFIG_FILE, DOCKER_FILE) if not (self.path / name).is_file()]
        if missing:
            for name in missing:
                log.error("File not found: %s", name)
            raise FileNotFoundError(
                "One or more expected files are missing from the project directory: "
                + ", ".join(missing)
            )

    def tarball(self) -> bytes:
        buffer = io.BytesIO()
        with tarfile.open(fileobj=buffer, mode="w", format=tarfile.GNU_FORMAT) as tar:
            for child in sorted(self.path.iterdir()):
                tar.add(child, arcname=child.name)
        return buffer.getvalue()

    def config(self) -> ProjectConfig:
        return ProjectConfig.from_yaml((self.path / CONFIG_FILE).read_text())


class InMemoryProjectFolder(ProjectDescription):
    """A project folder held in memory whose config may be changed.

    Changes to ``project_config`` are reflected in the config.yaml of the tarball.
    """

    def __init__(self, project_config: ProjectConfig, tarball: bytes) -> None:
        self.project_config = project_config
        self._tarball = bytes(tarball)

    @classmethod
    def from_folder(cls, folder: ProjectFolder) -> InMemoryProjectFolder:
        return cls(folder.config(), folder.tarball())

    def tarball(self) -> bytes:
        config_yaml = self.project_config.to_yaml().encode()
        buffer = io.BytesIO()
        with tarfile.open(fileobj=io.BytesIO(self._tarball)) as source, tarfile.open(
            fileobj=buffer, mode="w", format=tarfile.GNU_FORMAT
        ) as tar:
            info = tarfile.TarInfo(CONFIG_FILE)
            info.size = len(config_yaml)
            info.mode = 0o644
            tar.addfile(info, io.BytesIO(config_yaml))

            for member in source:
                if _is_config_entry(member.name):
                    continue
                data = source.extractfile(member) if member.isfile() else None
                tar.addfile(member, data)
        return buffer.getvalue()

    def config(self) -> ProjectConfig:
        return copy.deepcopy(self.project_config)