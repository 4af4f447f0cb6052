"""Project configuration, fuzzer statistics and config validation."""

from __future__ import annotations

import argparse
import enum
import re
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, ClassVar, TypeVar

import yaml


class ConfigError(ValueError):
    """Raised when a project configuration is malformed or invalid."""


class Language(enum.Enum):
    """Implementation language of a fuzzed project."""

    C = "C"
    CPP = "Cpp"
    RUST = "Rust"
    GO = "Go"


class FuzzEngine(enum.Enum):
    """Fuzz engines a project can be built for."""

    LIBFUZZER = "LibFuzzer"
    AFLPLUSPLUS = "AflPlusPlus"
    NATIVE_GO = "NativeGo"
    SEMSAN = "SemSan"
    NONE = "None"


_SANITIZER_KINDS = frozenset(
    {
        "Address",
        "Undefined",
        "Memory",
        "ValueProfile",
        "CmpLog",
        "Coverage",
        "None",
        "SemSan",
    }
)
_SEMSAN_PATTERN = re.compile(r"^SemSan\((\d+)\)$")


@dataclass(frozen=True)
class Sanitizer:
    """A sanitizer build; ``SemSan`` sanitizers carry a user defined number."""

    kind: str
    variant: int | None = None

    ADDRESS: ClassVar[Sanitizer]
    UNDEFINED: ClassVar[Sanitizer]
    MEMORY: ClassVar[Sanitizer]
    VALUE_PROFILE: ClassVar[Sanitizer]
    CMPLOG: ClassVar[Sanitizer]
    COVERAGE: ClassVar[Sanitizer]
    NONE: ClassVar[Sanitizer]

    def __post_init__(self) -> None:
        if self.kind not in _SANITIZER_KINDS:
            raise ConfigError(f"unknown sanitizer: {self.kind!r}")
        if self.kind == "SemSan":
            if not isinstance(self.variant, int) or isinstance(self.variant, bool):
                raise ConfigError("SemSan sanitizer needs an integer variant")
        elif self.variant is not None:
            raise ConfigError(f"sanitizer {self.kind} takes no variant")

    @classmethod
    def semsan(cls, number: int) -> Sanitizer:
        return cls("SemSan", number)

    @classmethod
    def parse(cls, value: Any) -> Sanitizer:
        """Parse a sanitizer from its YAML form."""
        if isinstance(value, str):
            match = _SEMSAN_PATTERN.match(value)
            if match:
                return cls.semsan(int(match.group(1)))
            return cls(value)
        if isinstance(value, dict) and len(value) == 1:
            ((key, number),) = value.items()
            if key == "SemSan":
                return cls.semsan(number)
        raise ConfigError(f"invalid sanitizer: {value!r}")

    @property
    def is_semsan(self) -> bool:
        return self.kind == "SemSan"

    def to_yaml_value(self) -> Any:
        if self.is_semsan:
            return {"SemSan": self.variant}
        return self.kind

    def __str__(self) -> str:
        return f"SemSan({self.variant})" if self.is_semsan else self.kind


Sanitizer.ADDRESS = Sanitizer("Address")
Sanitizer.UNDEFINED = Sanitizer("Undefined")
Sanitizer.MEMORY = Sanitizer("Memory")
Sanitizer.VALUE_PROFILE = Sanitizer("ValueProfile")
Sanitizer.CMPLOG = Sanitizer("CmpLog")
Sanitizer.COVERAGE = Sanitizer("Coverage")
Sanitizer.NONE = Sanitizer("None")


_E = TypeVar("_E", bound=enum.Enum)
_T = TypeVar("_T")


def _parse_enum(enum_cls: type[_E], value: Any, what: str) -> _E:
    try:
        return enum_cls(value)
    except ValueError as exc:
        raise ConfigError(f"unknown {what}: {value!r}") from exc


def _parse_list(value: Any, parse: Callable[[Any], _T], what: str) -> list[_T] | None:
    if value is None:
        return None
    if not isinstance(value, list):
        raise ConfigError(f"{what} must be a list")
    return [parse(item) for item in value]


def _optional_str(value: Any) -> str | None:
    return None if value is None else str(value)


def _parse_engine(value: Any) -> FuzzEngine:
    return _parse_enum(FuzzEngine, value, "fuzz engine")


_CONFIG_FIELDS = frozenset(
    {
        "name",
        "owner",
        "repo",
        "language",
        "branch",
        "pr_number",
        "engines",
        "sanitizers",
        "fuzz_env_var",
        "ccs",
    }
)


@dataclass
class ProjectConfig:
    """Configuration of a fuzzed project, as stored in its ``config.yaml``."""

    name: str
    owner: str
    repo: str
    language: Language = Language.CPP
    branch: str | None = None
    pr_number: str | None = None
    engines: list[FuzzEngine] | None = None
    sanitizers: list[Sanitizer] | None = None
    fuzz_env_var: str | None = None
    ccs: list[str] = field(default_factory=list)
    extra: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_yaml(cls, text: str) -> ProjectConfig:
        try:
            data = yaml.safe_load(text)
        except yaml.YAMLError as exc:
            raise ConfigError(f"invalid YAML: {exc}") from exc
        if not isinstance(data, dict):
            raise ConfigError("project config must be a mapping")
        missing = [key for key in ("name", "owner", "repo") if key not in data]
        if missing:
            raise ConfigError(f"missing config fields: {', '.join(missing)}")
        ccs = data.get("ccs") or []
        if not isinstance(ccs, list):
            raise ConfigError("ccs must be a list")
        return cls(
            name=str(data["name"]),
            owner=str(data["owner"]),
            repo=str(data["repo"]),
            language=_parse_enum(Language, data.get("language", "Cpp"), "language"),
            branch=_optional_str(data.get("branch")),
            pr_number=_optional_str(data.get("pr_number")),
            engines=_parse_list(data.get("engines"), _parse_engine, "engines"),
            sanitizers=_parse_list(data.get("sanitizers"), Sanitizer.parse, "sanitizers"),
            fuzz_env_var=_optional_str(data.get("fuzz_env_var")),
            ccs=[str(cc) for cc in ccs],
            extra={k: v for k, v in data.items() if k not in _CONFIG_FIELDS},
        )

    def to_yaml(self) -> str:
        data: dict[str, Any] = {
            "name": self.name,
            "owner": self.owner,
            "repo": self.repo,
            "language": self.language.value,
        }
        if self.branch is not None:
            data["branch"] = self.branch
        if self.pr_number is not None:
            data["pr_number"] = self.pr_number
        if self.engines is not None:
            data["engines"] = [engine.value for engine in self.engines]
        if self.sanitizers is not None:
            data["sanitizers"] = [s.to_yaml_value() for s in self.sanitizers]
        if self.fuzz_env_var is not None:
            data["fuzz_env_var"] = self.fuzz_env_var
        data["ccs"] = list(self.ccs)
        data.update(self.extra)
        return yaml.safe_dump(data, sort_keys=False)

    def has_sanitizer(self, sanitizer: Sanitizer) -> bool:
        return self.sanitizers is not None and sanitizer in self.sanitizers


@dataclass
class FuzzerStats:
    """Fuzzer statistics aggregated over all instances of a campaign."""

    execs_per_sec: float = 0.0
    saved_crashes: int = 0
    saved_hangs: int = 0
    corpus_count: int = 0
    stability: float | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> FuzzerStats:
        if not isinstance(data, dict):
            raise ConfigError("fuzzer stats must be a mapping")
        try:
            stability = data.get("stability")
            return cls(
                execs_per_sec=float(data.get("execs_per_sec", 0.0)),
                saved_crashes=int(data.get("saved_crashes", 0)),
                saved_hangs=int(data.get("saved_hangs", 0)),
                corpus_count=int(data.get("corpus_count", 0)),
                stability=None if stability is None else float(stability),
            )
        except (TypeError, ValueError) as exc:
            raise ConfigError(f"invalid fuzzer stats: {exc}") from exc


@dataclass
class CampaignStartupParams:
    """Parameters a fuzzing campaign was started with."""

    num_cpus: int
    duration_secs: int
    engines: list[FuzzEngine] | None
    sanitizers: list[Sanitizer] | None
    commit_hash: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "num_cpus": self.num_cpus,
            "duration_secs": self.duration_secs,
            "engines": None if self.engines is None else [e.value for e in self.engines],
            "sanitizers": (
                None
                if self.sanitizers is None
                else [s.to_yaml_value() for s in self.sanitizers]
            ),
            "commit_hash": self.commit_hash,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> CampaignStartupParams:
        try:
            return cls(
                num_cpus=int(data["num_cpus"]),
                duration_secs=int(data["duration_secs"]),
                engines=_parse_list(data.get("engines"), _parse_engine, "engines"),
                sanitizers=_parse_list(data.get("sanitizers"), Sanitizer.parse, "sanitizers"),
                commit_hash=str(data["commit_hash"]),
            )
        except (KeyError, TypeError, ValueError) as exc:
            if isinstance(exc, ConfigError):
                raise
            raise ConfigError(f"invalid startup params: {exc}") from exc


def validate_config(config: ProjectConfig) -> None:
    """Check engine and sanitizer combinations; raise ConfigError on the first violation."""
    engines = config.engines
    sanitizers = config.sanitizers

    if engines is not None:
        if config.language is Language.GO and (
            FuzzEngine.NATIVE_GO not in engines or len(engines) > 1
        ):
            raise ConfigError("Go projects only support NativeGo as fuzz engine")
        if config.language is Language.RUST and FuzzEngine.LIBFUZZER not in engines:
            raise ConfigError("Rust projects only support LibFuzzer as fuzz engine")

    if engines is None or sanitizers is None:
        return

    if (
        config.language is Language.RUST
        and FuzzEngine.LIBFUZZER not in engines
        and sanitizers == [Sanitizer.NONE]
    ):
        raise ConfigError("Rust projects have to configured with just Sanitizer::None")
    if FuzzEngine.LIBFUZZER not in engines and Sanitizer.VALUE_PROFILE in sanitizers:
        raise ConfigError("ValueProfile is only supported for LibFuzzer")
    if FuzzEngine.AFLPLUSPLUS not in engines and Sanitizer.CMPLOG in sanitizers:
        raise ConfigError("CmpLog is only supported for AflPlusPlus")
    if FuzzEngine.NONE not in engines and Sanitizer.COVERAGE in sanitizers:
        raise ConfigError("Coverage sanitizer needs FuzzEngine::None")
    if FuzzEngine.SEMSAN in engines and not any(s.is_semsan for s in sanitizers):
        raise ConfigError(
            "SemSan engine can only be used with at least one user defined SemSan "
            "sanitizer. Include SemSan(n) in your config and provide a build step for `n`."
        )


def main(argv: list[str] | None = None) -> int:
    """Validate a project config file; returns the process exit status."""
    parser = argparse.ArgumentParser(description="Validate a project config file")
    parser.add_argument("config", help="Config file to validate")
    args = parser.parse_args(argv)

    try:
        config = ProjectConfig.from_yaml(Path(args.config).read_text())
        validate_config(config)
    except (OSError, ConfigError) as exc:
        print(exc, file=sys.stderr)
        return 1
    return 0


if __name__ == "__main__":
    raise SystemExit(main())