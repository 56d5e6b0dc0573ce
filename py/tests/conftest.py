"""Shared fixtures: a throwaway repository per test and a fixed author."""

import os

import pytest

from grove.repository import Repository


TEST_AUTHOR = "Grove Test <test@grove.dev>"


@pytest.fixture(autouse=True)
def grove_author(monkeypatch):
    monkeypatch.setenv("GROVE_AUTHOR", TEST_AUTHOR)
    return TEST_AUTHOR


@pytest.fixture
def repo(tmp_path) -> Repository:
    return Repository.init(str(tmp_path / "work"))


@pytest.fixture
def make_repo(tmp_path):
    """Factory for several repositories side by side."""
    def _make(name: str) -> Repository:
        return Repository.init(os.path.join(str(tmp_path), name))
    return _make
