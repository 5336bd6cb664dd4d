import asyncio

from case_bot.control_plane.db.db import CaseDB
from case_bot.control_plane.db.repository import SqliteCaseRepository
from case_bot.control_plane.models.case_contracts import StageOutcome
from case_bot.control_plane.orchestration.orchestrator import CaseOrchestrator
from case_bot.control_plane.orchestration.stages import STAGES, Stage
from case_bot.control_plane.queue.case_queue import InMemoryCaseQueue


def _returning(outcome):
    async def _handler(case):
        return outcome

    return _handler


def _raising(exc: Exception):
    async def _handler(case):
        raise exc

    return _handler


def _harness(handler, repository_cls=SqliteCaseRepository):
    db = CaseDB()
    repository = repository_cls(db)
    queue = InMemoryCaseQueue()
    orchestrator = CaseOrchestrator(
        repository=repository,
        queue=queue,
        handlers={stage: handler for stage in STAGES},
    )
    return db, queue, orchestrator


def _seed(
    db: CaseDB,
    *,
    stage: str = "intake",
    status: str = "open",
    retry_count: int = 0,
    max_retries: int = 3,
    risk_flags: list[str] | None = None,
) -> str:
    case = db.create_case(
        org_id="org-1",
        title="Checkout totals wrong",
        case_type="bug",
        risk_flags=risk_flags,
        max_retries=max_retries,
    )
    db.update_case_workflow(
        case["case_id"], {"stage": stage, "status": status, "retry_count": retry_count}
    )
    return case["case_id"]


def _store_snapshot(db: CaseDB, case_id: str) -> tuple:
    return (db.get_case(case_id), db.list_case_events(case_id), db.list_approvals(case_id))


def test_intake_advance_without_risk_moves_to_triage_and_enqueues_once() -> None:
    db, queue, orchestrator = _harness(_returning(StageOutcome.advanced()))
    case_id = _seed(db, stage="intake")

    asyncio.run(orchestrator.process_case(case_id, Stage.INTAKE))

    case = db.get_case(case_id)
    assert (case["stage"], case["status"], case["retry_count"]) == ("triage", "open", 0)
    events = db.list_case_events(case_id)
    assert [(event["event_type"], event["stage"]) for event in events] == [
        ("stage_exit", "intake"),
        ("stage_enter", "triage"),
    ]
    assert [(job.case_id, job.stage) for job in queue.enqueued] == [(case_id, "triage")]


def test_billing_case_leaving_plan_is_gated_at_plan_review() -> None:
    db, queue, orchestrator = _harness(_returning(StageOutcome.advanced()))
    case_id = _seed(db, stage="plan", risk_flags=["billing"])

    asyncio.run(orchestrator.process_case(case_id, "plan"))

    case = db.get_case(case_id)
    assert (case["stage"], case["status"]) == ("plan_review", "needs_human")
    approvals = db.list_approvals(case_id)
    assert [(row["stage"], row["status"]) for row in approvals] == [("plan_review", "pending")]
    assert queue.enqueued == []


def test_error_under_retry_budget_reopens_same_stage() -> None:
    db, queue, orchestrator = _harness(_returning(StageOutcome.failed("x")))
    case_id = _seed(db, stage="execute", retry_count=2, max_retries=3)

    plan = asyncio.run(orchestrator.process_case(case_id, Stage.EXECUTE))

    assert plan.retry_error == "x"
    case = db.get_case(case_id)
    assert (case["stage"], case["status"], case["retry_count"]) == ("execute", "open", 3)
    assert [event["event_type"] for event in db.list_case_events(case_id)] == ["error"]
    assert queue.enqueued == []


def test_error_at_retry_budget_fails_and_escalates() -> None:
    db, _, orchestrator = _harness(_returning(StageOutcome.failed("x")))
    case_id = _seed(db, stage="execute", retry_count=3, max_retries=3)

    asyncio.run(orchestrator.process_case(case_id, Stage.EXECUTE))

    case = db.get_case(case_id)
    assert (case["stage"], case["status"]) == ("execute", "failed")
    assert len(db.list_case_events(case_id, event_type="escalation")) == 1


def test_stage_mismatch_delivery_is_a_no_op() -> None:
    calls = []

    async def _handler(case):
        calls.append(case.case_id)
        return StageOutcome.advanced()

    db, queue, orchestrator = _harness(_handler)
    case_id = _seed(db, stage="plan")
    before = _store_snapshot(db, case_id)

    assert asyncio.run(orchestrator.process_case(case_id, Stage.TRIAGE)) is None

    assert _store_snapshot(db, case_id) == before
    assert calls == []
    assert queue.enqueued == []


def test_terminal_cases_are_never_touched() -> None:
    db, queue, orchestrator = _harness(_returning(StageOutcome.advanced()))
    case_ids = [
        _seed(db, stage="execute", status=status)
        for status in ("completed", "failed", "cancelled")
    ]
    before = {case_id: _store_snapshot(db, case_id) for case_id in case_ids}

    for case_id in case_ids:
        asyncio.run(orchestrator.process_case(case_id, Stage.EXECUTE))

    assert {case_id: _store_snapshot(db, case_id) for case_id in case_ids} == before
    assert queue.enqueued == []


def test_advance_on_close_completes_case() -> None:
    db, queue, orchestrator = _harness(_returning(StageOutcome.advanced()))
    case_id = _seed(db, stage="close")

    asyncio.run(orchestrator.process_case(case_id, Stage.CLOSE))

    assert db.get_case(case_id)["status"] == "completed"
    assert queue.enqueued == []


def test_handler_exception_fails_case_with_error_event() -> None:
    db, _, orchestrator = _harness(_raising(RuntimeError("classifier exploded")))
    case_id = _seed(db, stage="triage", retry_count=0, max_retries=3)

    asyncio.run(orchestrator.process_case(case_id, Stage.TRIAGE))

    assert db.get_case(case_id)["status"] == "failed"
    errors = db.list_case_events(case_id, event_type="error")
    assert [event["summary"] for event in errors] == ["classifier exploded"]


def test_handler_returning_wrong_type_is_fatal() -> None:
    db, _, orchestrator = _harness(_returning("advance please"))
    case_id = _seed(db, stage="triage")

    asyncio.run(orchestrator.process_case(case_id, Stage.TRIAGE))

    assert db.get_case(case_id)["status"] == "failed"


def test_handler_returning_mapping_is_accepted() -> None:
    db, queue, orchestrator = _harness(_returning({"advance": True, "summary": "ok"}))
    case_id = _seed(db, stage="triage")

    asyncio.run(orchestrator.process_case(case_id, Stage.TRIAGE))

    assert db.get_case(case_id)["stage"] == "plan"
    assert [job.stage for job in queue.enqueued] == ["plan"]


def test_missing_handler_fails_case() -> None:
    db = CaseDB()
    repository = SqliteCaseRepository(db)
    orchestrator = CaseOrchestrator(
        repository=repository, queue=InMemoryCaseQueue(), handlers={}
    )
    case_id = _seed(db, stage="execute")

    asyncio.run(orchestrator.process_case(case_id, Stage.EXECUTE))

    assert db.get_case(case_id)["status"] == "failed"
    assert db.list_case_events(case_id)[0]["summary"] == "No handler for stage"


def test_unknown_stage_and_unknown_case_do_not_raise() -> None:
    db, queue, orchestrator = _harness(_returning(StageOutcome.advanced()))

    asyncio.run(orchestrator.process_case("missing", Stage.INTAKE))
    asyncio.run(orchestrator.process_case("missing", "deploy"))

    assert queue.enqueued == []


def test_queue_outage_leaves_case_positioned_at_next_stage() -> None:
    db, queue, orchestrator = _harness(_returning(StageOutcome.advanced()))
    queue.available = False
    case_id = _seed(db, stage="intake")

    asyncio.run(orchestrator.process_case(case_id, Stage.INTAKE))

    case = db.get_case(case_id)
    assert (case["stage"], case["status"]) == ("triage", "open")
    assert queue.enqueued == []


def test_event_write_failure_is_logged_and_transition_still_applies(caplog) -> None:
    class EventlessRepository(SqliteCaseRepository):
        async def insert_event(self, event):
            raise RuntimeError("audit table locked")

    db, queue, orchestrator = _harness(
        _returning(StageOutcome.advanced()), repository_cls=EventlessRepository
    )
    case_id = _seed(db, stage="intake")

    asyncio.run(orchestrator.process_case(case_id, Stage.INTAKE))

    assert db.get_case(case_id)["stage"] == "triage"
    assert db.list_case_events(case_id) == []
    assert [job.stage for job in queue.enqueued] == ["triage"]
    assert "Failed to insert event" in caplog.text


def test_case_cancelled_while_handler_runs_is_not_overwritten() -> None:
    db = CaseDB()

    async def _handler(case):
        # An operator cancels the case mid-flight.
        db.update_case_workflow(case.case_id, {"status": "cancelled"})
        return StageOutcome.advanced()

    repository = SqliteCaseRepository(db)
    queue = InMemoryCaseQueue()
    orchestrator = CaseOrchestrator(
        repository=repository, queue=queue, handlers={Stage.TRIAGE: _handler}
    )
    case_id = _seed(db, stage="triage")

    asyncio.run(orchestrator.process_case(case_id, Stage.TRIAGE))

    case = db.get_case(case_id)
    assert (case["stage"], case["status"]) == ("triage", "cancelled")
    assert db.list_case_events(case_id) == []
    assert queue.enqueued == []


def test_concurrent_duplicate_deliveries_apply_one_transition() -> None:
    async def _handler(case):
        await asyncio.sleep(0)
        return StageOutcome.advanced()

    db, queue, orchestrator = _harness(_handler)
    case_id = _seed(db, stage="triage")

    async def _deliver_twice() -> None:
        await asyncio.gather(
            orchestrator.process_case(case_id, Stage.TRIAGE),
            orchestrator.process_case(case_id, Stage.TRIAGE),
        )

    asyncio.run(_deliver_twice())

    case = db.get_case(case_id)
    assert (case["stage"], case["status"]) == ("plan", "open")
    assert len(db.list_case_events(case_id, event_type="stage_exit")) == 1
    assert [job.stage for job in queue.enqueued] == ["plan"]


def test_delivery_losing_the_claim_skips_handler() -> None:
    calls = []

    class RacingRepository(SqliteCaseRepository):
        async def get_case(self, case_id):
            case = await super().get_case(case_id)
            # Another worker claims the case between our load and our claim.
            self.db.update_case_workflow(case_id, {"status": "in_progress"})
            return case

    async def _handler(case):
        calls.append(case.case_id)
        return StageOutcome.advanced()

    db, queue, orchestrator = _harness(_handler, repository_cls=RacingRepository)
    case_id = _seed(db, stage="triage")

    asyncio.run(orchestrator.process_case(case_id, Stage.TRIAGE))

    assert calls == []
    assert db.get_case(case_id)["stage"] == "triage"
    assert queue.enqueued == []
