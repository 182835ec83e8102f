from __future__ import annotations

import threading

from conftest import at

from flightops.domain import AssignmentRecord, AuthorizationStatus, PlanStatus, WorkerAvailability


def _queued(repository, name: str, seconds: float):
    return repository.create_plan(name, f"content of {name}", status=PlanStatus.QUEUED, created_at=at(seconds))


def test_oldest_queued_plan_orders_by_creation_then_id(repository):
    late = _queued(repository, "late", 30)
    tie_a = _queued(repository, "tie-a", 10)
    tie_b = _queued(repository, "tie-b", 10)
    repository.create_plan("draft", "not queued", created_at=at(0))

    assert repository.find_oldest_queued_plan().id == tie_a.id
    assert [plan.id for plan in repository.list_plans(PlanStatus.QUEUED)] == [tie_a.id, tie_b.id, late.id]


def test_reserve_marks_plan_and_worker_together(repository):
    worker = repository.register_worker("VM1", "http://vm1")
    plan = _queued(repository, "p1", 0)

    assignment = repository.reserve(plan.id, worker.id)

    assert assignment is not None
    assert assignment.plan.status == PlanStatus.IN_PROGRESS
    assert assignment.plan.assigned_worker_id == worker.id
    assert assignment.worker.availability == WorkerAvailability.BUSY
    assert repository.get_plan(plan.id).status == PlanStatus.IN_PROGRESS
    assert repository.get_worker(worker.id).availability == WorkerAvailability.BUSY


def test_reserve_is_conditional_on_prior_state(repository):
    worker = repository.register_worker("VM1", "http://vm1")
    first = _queued(repository, "p1", 0)
    second = _queued(repository, "p2", 1)
    draft = repository.create_plan("draft", "x")

    assert repository.reserve(first.id, worker.id) is not None
    # worker already busy
    assert repository.reserve(second.id, worker.id) is None
    assert repository.get_plan(second.id).status == PlanStatus.QUEUED

    other = repository.register_worker("VM2", "http://vm2")
    # plan no longer queued / never queued
    assert repository.reserve(first.id, other.id) is None
    assert repository.reserve(draft.id, other.id) is None
    assert repository.get_worker(other.id).availability == WorkerAvailability.AVAILABLE


def test_concurrent_reservations_bind_a_worker_once(repository):
    worker = repository.register_worker("VM1", "http://vm1")
    plans = [_queued(repository, f"p{index}", index) for index in range(6)]
    barrier = threading.Barrier(len(plans))
    won: list[int] = []

    def attempt(plan_id: int) -> None:
        barrier.wait()
        if repository.reserve(plan_id, worker.id) is not None:
            won.append(plan_id)

    threads = [threading.Thread(target=attempt, args=(plan.id,)) for plan in plans]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert len(won) == 1
    in_progress = repository.list_plans(PlanStatus.IN_PROGRESS)
    assert [plan.id for plan in in_progress] == won
    assert in_progress[0].assigned_worker_id == worker.id


def test_complete_and_fail_release_the_worker(repository):
    worker = repository.register_worker("VM1", "http://vm1")
    ok = _queued(repository, "ok", 0)
    bad = _queued(repository, "bad", 1)

    repository.reserve(ok.id, worker.id)
    assert repository.complete_plan(ok.id, worker.id, "lat,lon\n1,2\n")
    done = repository.get_plan(ok.id)
    assert done.status == PlanStatus.DONE
    assert done.result_id == ok.id
    assert done.assigned_worker_id is None
    assert repository.get_result(ok.id).payload == "lat,lon\n1,2\n"
    assert repository.get_worker(worker.id).availability == WorkerAvailability.AVAILABLE

    repository.reserve(bad.id, worker.id)
    assert repository.fail_plan(bad.id, worker.id, "HTTP 500")
    failed = repository.get_plan(bad.id)
    assert failed.status == PlanStatus.ERROR
    assert failed.error_message == "HTTP 500"
    assert failed.result_id is None
    assert repository.get_worker(worker.id).availability == WorkerAvailability.AVAILABLE


def test_settling_a_revoked_reservation_leaves_the_worker_alone(repository):
    worker = repository.register_worker("VM1", "http://vm1")
    stale = _queued(repository, "stale", 0)
    fresh = _queued(repository, "fresh", 1)

    repository.reserve(stale.id, worker.id)
    repository.release_all_workers()
    repository.requeue_in_progress_plans()
    repository.reserve(fresh.id, worker.id)

    # the late answer for the revoked reservation must not free the worker
    assert not repository.complete_plan(stale.id, worker.id, "late")
    assert repository.get_plan(stale.id).status == PlanStatus.QUEUED
    assert repository.get_worker(worker.id).availability == WorkerAvailability.BUSY


def test_enqueue_requeues_error_and_discards_old_result(repository):
    worker = repository.register_worker("VM1", "http://vm1")
    plan = _queued(repository, "p1", 0)
    repository.reserve(plan.id, worker.id)
    repository.complete_plan(plan.id, worker.id, "payload")

    assert repository.enqueue_plan(plan.id)
    requeued = repository.get_plan(plan.id)
    assert requeued.status == PlanStatus.QUEUED
    assert requeued.result_id is None
    assert repository.get_result(plan.id) is None

    repository.reserve(plan.id, worker.id)
    assert not repository.enqueue_plan(plan.id)


def test_reset_plan_clears_everything_and_frees_worker(repository):
    worker = repository.register_worker("VM1", "http://vm1")
    plan = _queued(repository, "p1", 0)
    repository.set_external_response_number(plan.id, "X-1")
    repository.update_authorization(plan.id, AuthorizationStatus.APPROVED, "{}")
    repository.reserve(plan.id, worker.id)

    assert repository.reset_plan(plan.id)
    reset = repository.get_plan(plan.id)
    assert reset.status == PlanStatus.UNPROCESSED
    assert reset.assigned_worker_id is None
    assert reset.authorization_status == AuthorizationStatus.NONE
    assert reset.authorization_message is None
    assert reset.external_response_number is None
    assert repository.get_worker(worker.id).availability == WorkerAvailability.AVAILABLE
    assert not repository.reset_plan(9999)


def test_external_response_number_is_unique(repository):
    first = repository.create_plan("p1", "a")
    second = repository.create_plan("p2", "b")

    assert repository.set_external_response_number(first.id, "X-9")
    assert not repository.set_external_response_number(second.id, "X-9")
    assert repository.set_external_response_number(first.id, "X-9")
    assert repository.find_plan_by_external_number("X-9").id == first.id
    assert repository.find_plan_by_external_number("missing") is None


def test_authorization_update_leaves_processing_fields_untouched(repository):
    worker = repository.register_worker("VM1", "http://vm1")
    plan = _queued(repository, "p1", 0)
    repository.reserve(plan.id, worker.id)

    assert repository.update_authorization(plan.id, AuthorizationStatus.DENIED, '{"reason": "zone"}')
    updated = repository.get_plan(plan.id)
    assert updated.authorization_status == AuthorizationStatus.DENIED
    assert updated.authorization_message == '{"reason": "zone"}'
    assert updated.status == PlanStatus.IN_PROGRESS
    assert updated.assigned_worker_id == worker.id
    assert not repository.update_authorization(9999, AuthorizationStatus.DENIED, None)


def test_worker_registry_is_idempotent(repository):
    first = repository.register_worker("VM1", "http://vm1")
    again = repository.register_worker("VM1", "http://vm1-new")

    assert again.id == first.id
    assert again.address == "http://vm1-new"
    assert len(repository.list_workers()) == 1

    assert repository.set_worker_availability(first.id, WorkerAvailability.BUSY)
    assert repository.set_worker_availability(first.id, WorkerAvailability.BUSY)
    assert repository.find_available_worker() is None
    assert repository.list_workers(WorkerAvailability.BUSY)[0].id == first.id
    assert not repository.set_worker_availability(9999, WorkerAvailability.AVAILABLE)


def test_remove_worker_requeues_its_plan(repository):
    worker = repository.register_worker("VM1", "http://vm1")
    plan = _queued(repository, "p1", 0)
    repository.reserve(plan.id, worker.id)

    assert repository.remove_worker(worker.id)
    assert repository.get_worker(worker.id) is None
    requeued = repository.get_plan(plan.id)
    assert requeued.status == PlanStatus.QUEUED
    assert requeued.assigned_worker_id is None
    assert not repository.remove_worker(worker.id)


def test_results_bulk_fetch_and_delete(repository):
    worker = repository.register_worker("VM1", "http://vm1")
    plans = [_queued(repository, f"p{index}", index) for index in range(3)]
    for plan in plans:
        repository.reserve(plan.id, worker.id)
        repository.complete_plan(plan.id, worker.id, f"result-{plan.id}" * 10)

    fetched = repository.get_results([plans[2].id, plans[0].id, 9999])
    assert [result.id for result in fetched] == [plans[2].id, plans[0].id]
    assert fetched[0].size_bytes == len(f"result-{plans[2].id}" * 10)

    assert repository.delete_results([plans[0].id, plans[1].id, 9999]) == 2
    for plan in plans[:2]:
        current = repository.get_plan(plan.id)
        assert current.status == PlanStatus.QUEUED
        assert current.result_id is None
    assert repository.get_plan(plans[2].id).status == PlanStatus.DONE


def test_assignment_audit_log(repository):
    repository.record_assignment(AssignmentRecord(plan_id=1, worker_id=2, worker_name="VM1", assigned_at=at(0)))
    repository.record_assignment(AssignmentRecord(plan_id=3, worker_id=2, worker_name="VM1", assigned_at=at(5)))

    assert [record.plan_id for record in repository.list_assignments()] == [1, 3]
    only = repository.list_assignments(plan_id=3)
    assert len(only) == 1
    assert only[0].assigned_at == at(5)


def test_worker_with_running_plan_cannot_be_freed_by_hand(repository):
    worker = repository.register_worker("VM1", "http://vm1")
    first = _queued(repository, "p1", 0)
    second = _queued(repository, "p2", 1)
    repository.reserve(first.id, worker.id)

    assert not repository.set_worker_availability(worker.id, WorkerAvailability.AVAILABLE)
    assert repository.get_worker(worker.id).availability == WorkerAvailability.BUSY
    assert repository.reserve(second.id, worker.id) is None
    assert [plan.id for plan in repository.list_plans(PlanStatus.IN_PROGRESS)] == [first.id]

    repository.complete_plan(first.id, worker.id, "csv")
    assert repository.set_worker_availability(worker.id, WorkerAvailability.BUSY)
    assert repository.set_worker_availability(worker.id, WorkerAvailability.AVAILABLE)


def test_authorization_update_leaves_updated_at_alone(repository):
    plan = _queued(repository, "p1", 0)
    before = repository.get_plan(plan.id).updated_at

    repository.update_authorization(plan.id, AuthorizationStatus.APPROVED, "{}")

    assert repository.get_plan(plan.id).updated_at == before
