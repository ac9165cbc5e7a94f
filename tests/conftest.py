"""
Shared fixtures: the raw YAML documents of both shipped environments.

Tests get a fresh copy of each document so they can mutate it freely.
"""

import copy
from pathlib import Path

import pytest
import yaml

REPO_ROOT = Path(__file__).resolve().parent.parent


def _read(name: str) -> dict:
    with open(REPO_ROOT / name, "r") as file:
        return yaml.safe_load(file)


@pytest.fixture
def sandbox_data() -> dict:
    """Return the sandbox environment configuration document."""
    return copy.deepcopy(_read("config.yaml"))


@pytest.fixture
def isolated_data() -> dict:
    """Return the isolated environment configuration document."""
    return copy.deepcopy(_read("config.isolated.yaml"))
