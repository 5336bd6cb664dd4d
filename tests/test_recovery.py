import asyncio

from case_bot.control_plane.db.db import CaseDB
from case_bot.control_plane.db.repository import SqliteCaseRepository
from case_bot.control_plane.orchestration.recovery import RecoveryService
from case_bot.control_plane.queue.case_queue import InMemoryCaseQueue


def _seed(db: CaseDB, stage: str, status: str, org_id: str = "org-1") -> str:
    case = db.create_case(org_id=org_id, title=f"{stage}/{status}", case_type="bug")
    db.update_case_workflow(case["case_id"], {"stage": stage, "status": status})
    return case["case_id"]


def test_sweep_reenqueues_open_and_in_progress_cases_once() -> None:
    db = CaseDB()
    queue = InMemoryCaseQueue()
    service = RecoveryService(repository=SqliteCaseRepository(db), queue=queue)
    stalled_open = _seed(db, "execute", "open")
    stalled_running = _seed(db, "triage", "in_progress")
    _seed(db, "plan_review", "needs_human")
    _seed(db, "close", "completed")
    _seed(db, "execute", "failed")

    handles = asyncio.run(service.sweep())

    assert sorted((handle.case_id, handle.stage) for handle in handles) == sorted(
        [(stalled_open, "execute"), (stalled_running, "triage")]
    )
    assert len(queue.enqueued) == 2
    events = db.list_case_events(stalled_open, event_type="recovery_enqueue")
    assert len(events) == 1
    assert events[0]["details"]["status"] == "open"
    assert events[0]["details"]["job_id"] == next(
        handle.job_id for handle in handles if handle.case_id == stalled_open
    )


def test_sweep_filters_by_org() -> None:
    db = CaseDB()
    queue = InMemoryCaseQueue()
    service = RecoveryService(repository=SqliteCaseRepository(db), queue=queue)
    mine = _seed(db, "plan", "open", org_id="org-a")
    _seed(db, "plan", "open", org_id="org-b")

    handles = asyncio.run(service.sweep(org_id="org-a"))

    assert [handle.case_id for handle in handles] == [mine]


def test_sweep_tolerates_queue_outage() -> None:
    db = CaseDB()
    queue = InMemoryCaseQueue()
    queue.available = False
    service = RecoveryService(repository=SqliteCaseRepository(db), queue=queue)
    case_id = _seed(db, "execute", "open")

    assert asyncio.run(service.sweep()) == []
    assert db.list_case_events(case_id) == []
