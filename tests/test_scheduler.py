from __future__ import annotations

import asyncio

import pytest
from conftest import at

from flightops.domain import FlightPlan, PlanStatus, Worker, WorkerAvailability
from flightops.infrastructure import DispatchOutcome, InMemoryPlanRepository
from flightops.workers import AssignmentScheduler, SchedulerTiming

FAST = SchedulerTiming(tick_interval=0.01, max_idle_interval=0.05, idle_backoff=2.0)


class ScriptedDispatcher:
    """Answers dispatches from a script; plans listed in ``hold`` wait until released."""

    def __init__(self, outcomes: dict[str, DispatchOutcome | Exception] | None = None) -> None:
        self.outcomes = outcomes or {}
        self.calls: list[tuple[str, str]] = []
        self.gates: dict[str, asyncio.Event] = {}
        self.hold: set[str] = set()

    def release(self, name: str) -> None:
        self.gates.setdefault(name, asyncio.Event()).set()

    async def dispatch(self, plan: FlightPlan, worker: Worker) -> DispatchOutcome:
        self.calls.append((plan.custom_name, worker.name))
        if plan.custom_name in self.hold:
            await self.gates.setdefault(plan.custom_name, asyncio.Event()).wait()
        outcome = self.outcomes.get(plan.custom_name, DispatchOutcome.success(f"csv for {plan.custom_name}"))
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


def _queue(repository, name: str, seconds: float) -> int:
    return repository.create_plan(name, f"body {name}", status=PlanStatus.QUEUED, created_at=at(seconds)).id


def test_one_worker_processes_plans_in_submission_order():
    async def scenario() -> None:
        repository = InMemoryPlanRepository()
        worker = repository.register_worker("VM1", "http://vm1")
        first = _queue(repository, "P1", 0)
        second = _queue(repository, "P2", 1)
        dispatcher = ScriptedDispatcher()
        dispatcher.hold = {"P1", "P2"}
        scheduler = AssignmentScheduler(repository, dispatcher, timing=FAST)

        assignment = await scheduler.tick()
        assert assignment.plan.id == first
        assert repository.get_plan(first).status == PlanStatus.IN_PROGRESS
        # the only worker is busy, P2 waits
        assert await scheduler.tick() is None
        assert repository.get_plan(second).status == PlanStatus.QUEUED

        dispatcher.release("P1")
        await scheduler.drain()
        assert repository.get_plan(first).status == PlanStatus.DONE
        assert repository.get_result(first).payload == "csv for P1"
        assert repository.get_worker(worker.id).availability == WorkerAvailability.AVAILABLE

        assignment = await scheduler.tick()
        assert assignment.plan.id == second
        assert repository.get_plan(second).status == PlanStatus.IN_PROGRESS
        dispatcher.release("P2")
        await scheduler.drain()

        assert repository.get_plan(second).status == PlanStatus.DONE
        assert dispatcher.calls == [("P1", "VM1"), ("P2", "VM1")]
        assert [record.plan_id for record in repository.list_assignments()] == [first, second]

    asyncio.run(scenario())


def test_concurrent_ticks_reserve_once_per_worker():
    async def scenario() -> None:
        repository = InMemoryPlanRepository()
        repository.register_worker("VM1", "http://vm1")
        for index in range(3):
            _queue(repository, f"P{index}", index)
        dispatcher = ScriptedDispatcher()
        dispatcher.hold = {"P0", "P1", "P2"}
        scheduler = AssignmentScheduler(repository, dispatcher, timing=FAST)

        results = await asyncio.gather(scheduler.tick(), scheduler.tick(), scheduler.tick())

        assert len([item for item in results if item is not None]) == 1
        assert len(repository.list_plans(PlanStatus.IN_PROGRESS)) == 1
        await scheduler.stop()

    asyncio.run(scenario())


def test_two_schedulers_sharing_a_store_never_double_book(repository):
    async def scenario() -> None:
        repository.register_worker("VM1", "http://vm1")
        for index in range(4):
            _queue(repository, f"P{index}", index)
        dispatcher = ScriptedDispatcher()
        dispatcher.hold = {f"P{index}" for index in range(4)}
        left = AssignmentScheduler(repository, dispatcher, timing=FAST)
        right = AssignmentScheduler(repository, dispatcher, timing=FAST)

        results = await asyncio.gather(left.tick(), right.tick(), left.tick(), right.tick())

        assert len([item for item in results if item is not None]) == 1
        in_progress = repository.list_plans(PlanStatus.IN_PROGRESS)
        assert len(in_progress) == 1
        assert repository.list_workers(WorkerAvailability.BUSY)[0].id == in_progress[0].assigned_worker_id
        await left.stop()
        await right.stop()

    asyncio.run(scenario())


@pytest.mark.parametrize(
    "outcome, expected_error",
    [
        (DispatchOutcome.failure("worker responded with HTTP 500"), "worker responded with HTTP 500"),
        (RuntimeError("socket exploded"), "dispatch crashed: socket exploded"),
    ],
)
def test_failed_dispatch_marks_error_and_frees_worker(outcome, expected_error):
    async def scenario() -> None:
        repository = InMemoryPlanRepository()
        worker = repository.register_worker("VM1", "http://vm1")
        plan_id = _queue(repository, "P1", 0)
        scheduler = AssignmentScheduler(repository, ScriptedDispatcher({"P1": outcome}), timing=FAST)

        await scheduler.tick()
        await scheduler.drain()

        plan = repository.get_plan(plan_id)
        assert plan.status == PlanStatus.ERROR
        assert plan.error_message == expected_error
        assert plan.result_id is None
        assert repository.get_worker(worker.id).availability == WorkerAvailability.AVAILABLE

    asyncio.run(scenario())


def test_stop_cancels_inflight_dispatch_and_frees_worker():
    async def scenario() -> None:
        repository = InMemoryPlanRepository()
        worker = repository.register_worker("VM1", "http://vm1")
        plan_id = _queue(repository, "P1", 0)
        dispatcher = ScriptedDispatcher()
        dispatcher.hold = {"P1"}
        scheduler = AssignmentScheduler(repository, dispatcher, timing=FAST)

        await scheduler.tick()
        await asyncio.sleep(0)
        assert scheduler.inflight == 1

        await scheduler.stop()

        assert scheduler.inflight == 0
        plan = repository.get_plan(plan_id)
        assert plan.status == PlanStatus.ERROR
        assert plan.error_message == "dispatch cancelled"
        assert repository.get_worker(worker.id).availability == WorkerAvailability.AVAILABLE

    asyncio.run(scenario())


def test_tick_without_work_reserves_nothing():
    async def scenario() -> None:
        repository = InMemoryPlanRepository()
        scheduler = AssignmentScheduler(repository, ScriptedDispatcher(), timing=FAST)
        assert await scheduler.tick() is None

        _queue(repository, "P1", 0)
        # no worker registered yet
        assert await scheduler.tick() is None
        assert repository.list_plans(PlanStatus.QUEUED)[0].custom_name == "P1"

    asyncio.run(scenario())


def test_running_loop_spreads_work_and_picks_up_new_plans():
    async def wait_for(predicate, timeout: float = 2.0) -> None:
        deadline = asyncio.get_running_loop().time() + timeout
        while not predicate():
            if asyncio.get_running_loop().time() > deadline:
                raise AssertionError("condition not reached in time")
            await asyncio.sleep(0.01)

    async def scenario() -> None:
        repository = InMemoryPlanRepository()
        repository.register_worker("VM1", "http://vm1")
        repository.register_worker("VM2", "http://vm2")
        for index in range(4):
            _queue(repository, f"P{index}", index)
        dispatcher = ScriptedDispatcher()
        scheduler = AssignmentScheduler(repository, dispatcher, timing=FAST)
        scheduler.start()
        try:
            await wait_for(lambda: len(repository.list_plans(PlanStatus.DONE)) == 4)

            late = repository.create_plan("late", "body", status=PlanStatus.QUEUED).id
            scheduler.notify()
            await wait_for(lambda: repository.get_plan(late).status == PlanStatus.DONE)
        finally:
            await scheduler.stop()

        assert not scheduler.running
        assert [name for name, _ in dispatcher.calls[:4]] == ["P0", "P1", "P2", "P3"]
        assert all(worker.availability == WorkerAvailability.AVAILABLE for worker in repository.list_workers())

    asyncio.run(scenario())


def test_idle_backoff_is_capped():
    timing = SchedulerTiming(tick_interval=0.5, max_idle_interval=3.0, idle_backoff=2.0)
    assert timing.next_idle_interval(0.5) == 1.0
    assert timing.next_idle_interval(2.0) == 3.0
    assert timing.next_idle_interval(3.0) == 3.0
