from __future__ import annotations

import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

sys.path.append(str(Path(__file__).resolve().parents[1]))

from flightops.infrastructure import InMemoryPlanRepository
from flightops.infrastructure.duckdb_store import DuckDBPlanRepository

T0 = datetime(2025, 3, 1, 8, 0, tzinfo=timezone.utc)


def at(seconds: float) -> datetime:
    return T0 + timedelta(seconds=seconds)


@pytest.fixture(params=["memory", "duckdb"])
def repository(request, tmp_path):
    if request.param == "memory":
        yield InMemoryPlanRepository()
        return
    repo = DuckDBPlanRepository(tmp_path / "plans.duckdb")
    try:
        yield repo
    finally:
        repo.close()
