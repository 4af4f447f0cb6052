"""Continuous fuzzing orchestration: configs, scheduling, campaigns, solutions and corpora."""

__version__ = "0.1.0"