"""Out-of-band reconciliation after a crash or a stuck scheduler.

Run it while no scheduler is active:

1. every worker becomes available;
2. plans left ``in_progress`` go back to ``queued`` without assignment or result;
3. plans whose stored result is below ``min_result_bytes`` are treated as
   never processed and re-queued the same way.

The byte cutoff is only a size heuristic for truncated output, nothing
checks the payload's structure.
"""
from __future__ import annotations

import argparse
import json
from dataclasses import dataclass, field

import structlog

from flightops.core.log import configure_logging
from flightops.core.settings import load_settings
from flightops.domain import PlanStatus, WorkerAvailability
from flightops.infrastructure import PlanRepository
from flightops.infrastructure.duckdb_store import DuckDBPlanRepository

logger = structlog.get_logger(__name__)

DEFAULT_MIN_RESULT_BYTES = 2048


@dataclass(slots=True)
class RecoveryReport:
    workers_released: int = 0
    in_progress_requeued: list[int] = field(default_factory=list)
    undersized_requeued: list[int] = field(default_factory=list)
    dry_run: bool = False

    def as_dict(self) -> dict[str, object]:
        return {
            "workers_released": self.workers_released,
            "in_progress_requeued": list(self.in_progress_requeued),
            "undersized_requeued": list(self.undersized_requeued),
            "dry_run": self.dry_run,
        }


class RecoveryTool:
    def __init__(self, repository: PlanRepository, *, min_result_bytes: int = DEFAULT_MIN_RESULT_BYTES) -> None:
        if min_result_bytes < 0:
            raise ValueError("min_result_bytes must not be negative")
        self._repository = repository
        self._min_result_bytes = min_result_bytes

    def plan(self) -> RecoveryReport:
        """Report what :meth:`run` would change without writing anything."""

        stuck = [plan.id for plan in self._repository.list_plans(PlanStatus.IN_PROGRESS)]
        undersized = [
            plan_id
            for plan_id in self._repository.list_undersized_results(self._min_result_bytes)
            if plan_id not in stuck and self._repository.get_plan(plan_id) is not None
        ]
        return RecoveryReport(
            workers_released=len(self._repository.list_workers(WorkerAvailability.BUSY)),
            in_progress_requeued=stuck,
            undersized_requeued=undersized,
            dry_run=True,
        )

    def run(self) -> RecoveryReport:
        report = RecoveryReport()
        report.workers_released = self._repository.release_all_workers()
        logger.info("recovery.workers_released", count=report.workers_released)

        report.in_progress_requeued = self._repository.requeue_in_progress_plans()
        logger.info("recovery.in_progress_requeued", count=len(report.in_progress_requeued))

        undersized = self._repository.list_undersized_results(self._min_result_bytes)
        report.undersized_requeued = self._repository.requeue_plans(undersized)
        logger.info(
            "recovery.undersized_requeued",
            count=len(report.undersized_requeued),
            min_result_bytes=self._min_result_bytes,
        )
        return report


def main(argv: list[str] | None = None) -> int:
    settings = load_settings()
    parser = argparse.ArgumentParser(description="Release all workers and re-queue stuck or truncated flight plans")
    parser.add_argument(
        "--database",
        default=settings.database,
        help="DuckDB database file (defaults to FLIGHTOPS_DATABASE)",
    )
    parser.add_argument(
        "--min-bytes",
        type=int,
        default=settings.min_result_bytes,
        help="results smaller than this many bytes are discarded",
    )
    parser.add_argument("--dry-run", action="store_true", help="only report what would be reset")
    args = parser.parse_args(argv)

    if not args.database:
        parser.error("--database is required when FLIGHTOPS_DATABASE is not set")

    configure_logging()
    repository = DuckDBPlanRepository(args.database)
    try:
        tool = RecoveryTool(repository, min_result_bytes=args.min_bytes)
        report = tool.plan() if args.dry_run else tool.run()
    finally:
        repository.close()

    print(json.dumps(report.as_dict(), indent=2))
    return 0
