"""Unit test fixtures. No database required."""

from __future__ import annotations

from datetime import datetime

import pytest

from discourse_etl.config import ImportConfig
from discourse_etl.shared import ImportLog, RunCounters
from fake_platform import FakePlatform


@pytest.fixture
def platform() -> FakePlatform:
    fake = FakePlatform()
    fake.add_user("asker@example.com")
    fake.add_user("helper@example.com")
    return fake


@pytest.fixture
def config(tmp_path) -> ImportConfig:
    return ImportConfig(csv_path=tmp_path / "topics.csv", log_path=tmp_path / "import_errors.log")


@pytest.fixture
def counters() -> RunCounters:
    return RunCounters()


@pytest.fixture
def import_log(tmp_path):
    log = ImportLog(tmp_path / "import_errors.log").open(datetime(2024, 3, 5, 9, 0))
    yield log
    log.close()
