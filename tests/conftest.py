"""Shared fixtures: temporary level directories and a shared DCT plan."""

from __future__ import annotations

import pytest

from db.database import LevelDatabase
from levels.fingerprint import DCTPlan


@pytest.fixture(scope="session")
def plan() -> DCTPlan:
    return DCTPlan()


@pytest.fixture
def levels_dir(tmp_path):
    return tmp_path / "levels"


@pytest.fixture
def db(levels_dir) -> LevelDatabase:
    database = LevelDatabase(levels_dir)
    database.load_all()
    return database
