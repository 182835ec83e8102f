from __future__ import annotations

import json

import pytest
from conftest import at

from flightops.domain import PlanStatus, WorkerAvailability
from flightops.infrastructure.duckdb_store import DuckDBPlanRepository
from flightops.workers import RecoveryTool
from flightops.workers.recovery import main


def _stuck_state(repository):
    """Two plans stuck in progress, one truncated result, one healthy result."""

    workers = [repository.register_worker(f"VM{index}", f"http://vm{index}") for index in range(1, 5)]
    plans = [
        repository.create_plan(f"P{index}", "body", status=PlanStatus.QUEUED, created_at=at(index))
        for index in range(4)
    ]
    for plan, worker in zip(plans, workers):
        repository.reserve(plan.id, worker.id)
    repository.complete_plan(plans[2].id, workers[2].id, "x" * 100)
    repository.complete_plan(plans[3].id, workers[3].id, "x" * 4096)
    # a worker flagged busy by hand with nothing assigned
    repository.set_worker_availability(workers[2].id, WorkerAvailability.BUSY)
    return plans, workers


def test_recovery_releases_workers_and_requeues_plans(repository):
    plans, workers = _stuck_state(repository)

    report = RecoveryTool(repository, min_result_bytes=2048).run()

    assert report.workers_released == 3
    assert sorted(report.in_progress_requeued) == [plans[0].id, plans[1].id]
    assert report.undersized_requeued == [plans[2].id]
    assert not report.dry_run

    assert all(worker.availability == WorkerAvailability.AVAILABLE for worker in repository.list_workers())
    for plan in plans[:3]:
        current = repository.get_plan(plan.id)
        assert current.status == PlanStatus.QUEUED
        assert current.assigned_worker_id is None
        assert current.result_id is None
    assert repository.get_result(plans[2].id) is None
    assert repository.get_plan(plans[3].id).status == PlanStatus.DONE
    assert repository.get_result(plans[3].id).size_bytes == 4096


def test_dry_run_reports_without_writing(repository):
    plans, _ = _stuck_state(repository)

    report = RecoveryTool(repository, min_result_bytes=2048).plan()

    assert report.dry_run
    assert report.workers_released == 3
    assert sorted(report.in_progress_requeued) == [plans[0].id, plans[1].id]
    assert report.undersized_requeued == [plans[2].id]
    assert len(repository.list_plans(PlanStatus.IN_PROGRESS)) == 2
    assert len(repository.list_workers(WorkerAvailability.BUSY)) == 3


def test_recovery_on_a_clean_store_is_a_no_op(repository):
    repository.register_worker("VM1", "http://vm1")

    report = RecoveryTool(repository).run()

    assert report.as_dict() == {
        "workers_released": 0,
        "in_progress_requeued": [],
        "undersized_requeued": [],
        "dry_run": False,
    }


def test_negative_threshold_is_rejected(repository):
    with pytest.raises(ValueError):
        RecoveryTool(repository, min_result_bytes=-1)


def test_command_line_tool_resets_a_database_file(tmp_path, capsys):
    path = tmp_path / "plans.duckdb"
    repository = DuckDBPlanRepository(path)
    plans, _ = _stuck_state(repository)
    repository.close()

    assert main(["--database", str(path), "--min-bytes", "2048"]) == 0

    report = json.loads(capsys.readouterr().out)
    assert report["workers_released"] == 3
    assert sorted(report["in_progress_requeued"]) == [plans[0].id, plans[1].id]
    assert report["undersized_requeued"] == [plans[2].id]

    reopened = DuckDBPlanRepository(path)
    try:
        assert reopened.list_plans(PlanStatus.IN_PROGRESS) == []
        assert reopened.list_workers(WorkerAvailability.BUSY) == []
    finally:
        reopened.close()


def test_command_line_dry_run_leaves_the_file_untouched(tmp_path, capsys):
    path = tmp_path / "plans.duckdb"
    repository = DuckDBPlanRepository(path)
    _stuck_state(repository)
    repository.close()

    assert main(["--database", str(path), "--dry-run"]) == 0

    assert json.loads(capsys.readouterr().out)["dry_run"] is True
    reopened = DuckDBPlanRepository(path)
    try:
        assert len(reopened.list_plans(PlanStatus.IN_PROGRESS)) == 2
    finally:
        reopened.close()
