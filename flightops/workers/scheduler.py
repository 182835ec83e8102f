"""Assignment scheduler: pairs the oldest queued plan with a free worker.

The reservation step (find worker, find plan, conditional write) runs under
a single-flight guard; the long dispatch call runs outside it as a
background task so the loop keeps assigning other workers meanwhile. The
loop sleeps with a geometric backoff while idle and is woken immediately
through :meth:`AssignmentScheduler.notify`.
"""
from __future__ import annotations

import asyncio
from dataclasses import dataclass

import structlog

from flightops.core.settings import Settings
from flightops.domain import Assignment, AssignmentRecord
from flightops.infrastructure import Dispatcher, DispatchOutcome, PlanRepository

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class SchedulerTiming:
    tick_interval: float = 0.5
    max_idle_interval: float = 10.0
    idle_backoff: float = 2.0

    @classmethod
    def from_settings(cls, settings: Settings) -> "SchedulerTiming":
        return cls(
            tick_interval=settings.tick_interval,
            max_idle_interval=max(settings.max_idle_interval, settings.tick_interval),
            idle_backoff=max(settings.idle_backoff, 1.0),
        )

    def next_idle_interval(self, current: float) -> float:
        return min(current * self.idle_backoff, self.max_idle_interval)


class AssignmentScheduler:
    def __init__(
        self,
        repository: PlanRepository,
        dispatcher: Dispatcher,
        *,
        timing: SchedulerTiming | None = None,
    ) -> None:
        self._repository = repository
        self._dispatcher = dispatcher
        self._timing = timing or SchedulerTiming()
        self._guard = asyncio.Lock()
        self._wake = asyncio.Event()
        self._loop: asyncio.AbstractEventLoop | None = None
        self._runner: asyncio.Task | None = None
        self._inflight: set[asyncio.Task] = set()

    @property
    def running(self) -> bool:
        return self._runner is not None and not self._runner.done()

    @property
    def inflight(self) -> int:
        return len(self._inflight)

    # ------------------------------------------------------------------
    # wake-ups
    # ------------------------------------------------------------------
    def notify(self) -> None:
        """Wake the loop; safe to call from any thread."""

        loop = self._loop
        if loop is None or loop.is_closed():
            return
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if running is loop:
            self._wake.set()
        else:
            loop.call_soon_threadsafe(self._wake.set)

    # ------------------------------------------------------------------
    # reservation
    # ------------------------------------------------------------------
    def _reserve(self) -> Assignment | None:
        worker = self._repository.find_available_worker()
        if worker is None:
            return None
        plan = self._repository.find_oldest_queued_plan()
        if plan is None:
            return None
        assignment = self._repository.reserve(plan.id, worker.id)
        if assignment is None:
            logger.debug("scheduler.reservation_lost", plan_id=plan.id, worker=worker.name)
            return None
        self._repository.record_assignment(
            AssignmentRecord(plan_id=assignment.plan.id, worker_id=worker.id, worker_name=worker.name)
        )
        return assignment

    async def tick(self) -> Assignment | None:
        """Run one scheduling step; returns the reservation made, if any."""

        self._loop = asyncio.get_running_loop()
        if self._guard.locked():
            logger.debug("scheduler.tick_skipped")
            return None

        async with self._guard:
            try:
                assignment = await asyncio.to_thread(self._reserve)
            except Exception:
                logger.exception("scheduler.reservation_failed")
                return None

        if assignment is None:
            return None

        logger.info(
            "scheduler.assigned",
            plan_id=assignment.plan.id,
            plan=assignment.plan.custom_name,
            worker=assignment.worker.name,
        )
        task = asyncio.create_task(self._dispatch(assignment), name=f"dispatch-plan-{assignment.plan.id}")
        self._inflight.add(task)
        task.add_done_callback(self._inflight.discard)
        return assignment

    # ------------------------------------------------------------------
    # dispatch
    # ------------------------------------------------------------------
    async def _dispatch(self, assignment: Assignment) -> None:
        plan, worker = assignment.plan, assignment.worker
        try:
            try:
                outcome = await self._dispatcher.dispatch(plan, worker)
            except asyncio.CancelledError:
                self._repository.fail_plan(plan.id, worker.id, "dispatch cancelled")
                logger.warning("scheduler.dispatch_cancelled", plan_id=plan.id, worker=worker.name)
                raise
            except Exception as exc:
                logger.exception("scheduler.dispatch_crashed", plan_id=plan.id, worker=worker.name)
                outcome = DispatchOutcome.failure(f"dispatch crashed: {exc}")
            await self._settle(assignment, outcome)
        finally:
            self.notify()

    async def _settle(self, assignment: Assignment, outcome: DispatchOutcome) -> None:
        plan, worker = assignment.plan, assignment.worker
        if outcome.ok and outcome.payload is not None:
            try:
                settled = await asyncio.to_thread(self._repository.complete_plan, plan.id, worker.id, outcome.payload)
            except Exception:
                logger.exception("scheduler.result_persist_failed", plan_id=plan.id)
                outcome = DispatchOutcome.failure("result could not be stored")
            else:
                self._log_settled(assignment, settled, "done")
                return

        reason = outcome.error or "dispatch failed"
        try:
            settled = await asyncio.to_thread(self._repository.fail_plan, plan.id, worker.id, reason)
        except Exception:
            logger.exception("scheduler.release_failed", plan_id=plan.id, worker=worker.name)
            return
        self._log_settled(assignment, settled, "error", reason=reason)

    @staticmethod
    def _log_settled(assignment: Assignment, settled: bool, status: str, **extra: object) -> None:
        log = logger.bind(plan_id=assignment.plan.id, worker=assignment.worker.name)
        if settled:
            log.info("scheduler.plan_settled", status=status, **extra)
        else:
            # reservation was revoked meanwhile, e.g. by a reset or the recovery tool
            log.warning("scheduler.reservation_revoked", status=status)

    async def drain(self) -> None:
        """Wait for every dispatch started so far."""

        while self._inflight:
            await asyncio.gather(*list(self._inflight), return_exceptions=True)

    # ------------------------------------------------------------------
    # loop
    # ------------------------------------------------------------------
    async def run(self) -> None:
        self._loop = asyncio.get_running_loop()
        interval = self._timing.tick_interval
        logger.info("scheduler.started", tick_interval=interval)
        while True:
            self._wake.clear()
            assignment = await self.tick()
            if assignment is not None:
                interval = self._timing.tick_interval
                continue
            try:
                await asyncio.wait_for(self._wake.wait(), timeout=interval)
            except asyncio.TimeoutError:
                interval = self._timing.next_idle_interval(interval)
            else:
                interval = self._timing.tick_interval

    def start(self) -> asyncio.Task:
        if self.running:
            return self._runner  # type: ignore[return-value]
        self._loop = asyncio.get_running_loop()
        self._runner = asyncio.create_task(self.run(), name="assignment-scheduler")
        return self._runner

    async def stop(self) -> None:
        """Stop the loop and cancel in-flight dispatches, releasing their workers."""

        runner, self._runner = self._runner, None
        if runner is not None:
            runner.cancel()
            await asyncio.gather(runner, return_exceptions=True)
        tasks = list(self._inflight)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        logger.info("scheduler.stopped", cancelled_dispatches=len(tasks))
