[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "fuzzor"
version = "0.1.0"
description = "Continuous fuzzing orchestration: campaign scheduling, solution tracking and corpus storage"
requires-python = ">=3.10"
keywords = ["fuzzing", "libfuzzer", "aflplusplus", "continuous-fuzzing", "campaigns", "asyncio"]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Intended Audience :: Developers",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Framework :: AsyncIO",
    "Topic :: Software Development :: Testing",
    "Topic :: Security",
]
dependencies = [
    "pyyaml",
]

[project.optional-dependencies]
test = [
    "pytest",
    "pytest-asyncio",
]

[project.scripts]
fuzzor-validate-config = "fuzzor.config:main"

[tool.hatch.build.targets.wheel]
packages = ["fuzzor"]

[tool.pytest.ini_options]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.mypy]
python_version = "3.10"
ignore_missing_imports = true
