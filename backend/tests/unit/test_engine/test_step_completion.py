"""Step completion orchestration tests: full runs over the in-memory store."""

import pytest

from flowrun.domain.enums import FlowRunStatus, StepExecutionStatus
from flowrun.domain.errors import StepExecutionNotFoundError
from flowrun.domain.models import FlowRun

from tests.factories import condition, flow, notifications_of, path, rows_by_step, step


async def start(service, flow_repo, definition, **kwargs):
    await flow_repo.save(definition)
    return await service.start_run(definition.flow_id, started_by_id="USR-1", **kwargs)


@pytest.mark.asyncio
async def test_linear_run_completes_once(service, flow_repo, run_repo, step_repo, notification_repo):
    run = await start(service, flow_repo, flow(step("a"), step("b"), step("c")))
    rows = await rows_by_step(step_repo, run.flow_run_id)

    assert rows["a"].status == StepExecutionStatus.IN_PROGRESS
    assert rows["a"].started_at is not None
    assert rows["b"].status == StepExecutionStatus.PENDING

    result = await service.complete_step(rows["a"].step_execution_id, {"ok": True}, completed_by_id="USR-2")
    assert result.completed is True
    assert result.next_step_ids == [rows["b"].step_execution_id]
    assert result.flow_completed is False

    await service.complete_step(rows["b"].step_execution_id)
    result = await service.complete_step(rows["c"].step_execution_id)

    assert result.flow_completed is True
    assert result.next_step_ids == []
    stored = await run_repo.get(run.flow_run_id)
    assert stored.status == FlowRunStatus.COMPLETED
    assert stored.completed_at is not None
    assert len(notifications_of(notification_repo, "FLOW_COMPLETED")) == 1
    assert len(notifications_of(notification_repo, "STEP_COMPLETED")) == 3

    rows = await rows_by_step(step_repo, run.flow_run_id)
    assert rows["a"].result_data == {"ok": True}
    assert rows["a"].completed_by_id == "USR-2"


@pytest.mark.asyncio
async def test_recompleting_a_step_is_a_no_op(service, flow_repo, step_repo, notification_repo):
    run = await start(service, flow_repo, flow(step("a"), step("b")))
    rows = await rows_by_step(step_repo, run.flow_run_id)

    await service.complete_step(rows["a"].step_execution_id, {"first": True})
    again = await service.complete_step(rows["a"].step_execution_id, {"second": True})

    assert again.completed is False
    assert again.next_step_ids == []
    rows = await rows_by_step(step_repo, run.flow_run_id)
    assert rows["a"].result_data == {"first": True}
    assert rows["b"].status == StepExecutionStatus.IN_PROGRESS
    assert len(notifications_of(notification_repo, "STEP_COMPLETED")) == 1


@pytest.mark.asyncio
async def test_pending_step_cannot_be_completed(service, flow_repo, step_repo):
    run = await start(service, flow_repo, flow(step("a"), step("b")))
    rows = await rows_by_step(step_repo, run.flow_run_id)

    result = await service.complete_step(rows["b"].step_execution_id)

    assert result.completed is False


@pytest.mark.asyncio
async def test_unknown_step_raises(service):
    run = FlowRun(flow_run_id="RUN-X", flow_id="FLOW-X", name="Missing")
    with pytest.raises(StepExecutionNotFoundError):
        await service.orchestrator.complete_step_and_advance("SE-missing", {}, run, [])


@pytest.mark.asyncio
async def test_single_choice_run(service, flow_repo, run_repo, step_repo):
    definition = flow(
        step("intake"),
        step("choose", "SINGLE_CHOICE_BRANCH", paths=[
            path("P1", step("p1a"), step("p1b")),
            path("P2", step("p2a")),
        ]),
        step("after"),
    )
    run = await start(service, flow_repo, definition)
    rows = await rows_by_step(step_repo, run.flow_run_id)

    await service.complete_step(rows["intake"].step_execution_id)
    rows = await rows_by_step(step_repo, run.flow_run_id)
    assert rows["choose"].status == StepExecutionStatus.IN_PROGRESS

    result = await service.complete_step(rows["choose"].step_execution_id, {"selected_path_id": "P1"})
    rows = await rows_by_step(step_repo, run.flow_run_id)
    assert result.next_step_ids == [rows["p1a"].step_execution_id]
    assert rows["p1a"].status == StepExecutionStatus.IN_PROGRESS
    assert rows["p1b"].status == StepExecutionStatus.PENDING

    stored = await run_repo.get(run.flow_run_id)
    assert stored.current_step_index == 1

    await service.complete_step(rows["p1a"].step_execution_id)
    result = await service.complete_step(rows["p1b"].step_execution_id)
    assert result.next_step_ids == [rows["after"].step_execution_id]

    result = await service.complete_step(rows["after"].step_execution_id)
    assert result.flow_completed is True


@pytest.mark.asyncio
async def test_multi_choice_is_routed_automatically(service, flow_repo, step_repo):
    definition = flow(
        step("route", "MULTI_CHOICE_BRANCH", paths=[
            path("US", step("us_review"), condition=condition("{Kickoff / Region}", "EQUALS", "US")),
            path("DEFAULT", step("global_review"), is_default=True),
        ]),
        step("after"),
    )

    us_run = await start(service, flow_repo, definition, kickoff_data={"Region": "US"})
    eu_run = await start(service, flow_repo, definition, kickoff_data={"Region": "EU"})

    us_rows = await rows_by_step(step_repo, us_run.flow_run_id)
    eu_rows = await rows_by_step(step_repo, eu_run.flow_run_id)

    assert us_rows["route"].status == StepExecutionStatus.COMPLETED
    assert us_rows["us_review"].status == StepExecutionStatus.IN_PROGRESS
    assert "global_review" not in us_rows
    assert eu_rows["global_review"].status == StepExecutionStatus.IN_PROGRESS
    assert "us_review" not in eu_rows


@pytest.mark.asyncio
async def test_parallel_run_converges_exactly_once(service, flow_repo, run_repo, step_repo):
    definition = flow(
        step("split", "PARALLEL_BRANCH", paths=[
            path("A", step("a1"), step("a2")),
            path("B", step("b1")),
        ]),
        step("after"),
    )
    run = await start(service, flow_repo, definition)
    rows = await rows_by_step(step_repo, run.flow_run_id)

    assert rows["split"].status == StepExecutionStatus.COMPLETED
    assert rows["a1"].status == StepExecutionStatus.IN_PROGRESS
    assert rows["b1"].status == StepExecutionStatus.IN_PROGRESS
    assert rows["a2"].status == StepExecutionStatus.PENDING

    result = await service.complete_step(rows["a1"].step_execution_id)
    assert result.next_step_ids == [rows["a2"].step_execution_id]

    result = await service.complete_step(rows["b1"].step_execution_id)
    assert result.completed is True
    assert result.next_step_ids == []
    assert result.flow_completed is False
    assert (await run_repo.get(run.flow_run_id)).status == FlowRunStatus.IN_PROGRESS

    result = await service.complete_step(rows["a2"].step_execution_id)
    assert result.next_step_ids == [rows["after"].step_execution_id]

    again = await service.complete_step(rows["a2"].step_execution_id)
    assert again.completed is False

    result = await service.complete_step(rows["after"].step_execution_id)
    assert result.flow_completed is True


@pytest.mark.asyncio
async def test_skipped_steps_are_passed_over(service, flow_repo, step_repo):
    skip = condition("skip", "EQUALS", "yes")
    definition = flow(
        step("s1"),
        step("s2", skip_condition=skip),
        step("s3", skip_condition=skip),
        step("s4", skip_condition=skip),
        step("s5"),
    )
    run = await start(service, flow_repo, definition, kickoff_data={"skip": "yes"})
    rows = await rows_by_step(step_repo, run.flow_run_id)

    result = await service.complete_step(rows["s1"].step_execution_id)

    assert result.next_step_ids == [rows["s5"].step_execution_id]
    assert result.skipped_step_ids == [rows[s].step_execution_id for s in ("s2", "s3", "s4")]


@pytest.mark.asyncio
async def test_skip_condition_on_step_output(service, flow_repo, step_repo):
    definition = flow(
        step("review", name="Review"),
        step("escalate", skip_condition=condition("{Review / Decision}", "EQUALS", "approved")),
        step("archive"),
    )
    run = await start(service, flow_repo, definition)
    rows = await rows_by_step(step_repo, run.flow_run_id)

    result = await service.complete_step(rows["review"].step_execution_id, {"Decision": "Approved"})

    assert result.skipped_step_ids == [rows["escalate"].step_execution_id]
    assert result.next_step_ids == [rows["archive"].step_execution_id]


@pytest.mark.asyncio
async def test_run_with_every_step_skipped_completes_at_start(service, flow_repo, run_repo, step_repo):
    skip = condition("skip", "NOT_EMPTY")
    run = await start(service, flow_repo, flow(step("s1", skip_condition=skip), step("s2", skip_condition=skip)),
                      kickoff_data={"skip": "x"})

    stored = await run_repo.get(run.flow_run_id)
    rows = await rows_by_step(step_repo, run.flow_run_id)

    assert stored.status == FlowRunStatus.COMPLETED
    assert {r.status for r in rows.values()} == {StepExecutionStatus.SKIPPED}


@pytest.mark.asyncio
async def test_last_step_skipped_completes_run(service, flow_repo, run_repo, step_repo):
    definition = flow(step("s1"), step("s2", skip_condition=condition("skip", "EQUALS", "yes")))
    run = await start(service, flow_repo, definition, kickoff_data={"skip": "yes"})
    rows = await rows_by_step(step_repo, run.flow_run_id)

    result = await service.complete_step(rows["s1"].step_execution_id)

    assert result.flow_completed is True
    assert result.skipped_step_ids == [rows["s2"].step_execution_id]
    assert (await run_repo.get(run.flow_run_id)).status == FlowRunStatus.COMPLETED


@pytest.mark.asyncio
async def test_unfilled_role_waits_for_assignee(service, flow_repo, step_repo):
    definition = flow(step("sign", config={"assignee": "Signer"}))
    run = await start(service, flow_repo, definition)
    rows = await rows_by_step(step_repo, run.flow_run_id)

    assert rows["sign"].status == StepExecutionStatus.WAITING_FOR_ASSIGNEE

    result = await service.complete_step(rows["sign"].step_execution_id)
    assert result.completed is True
    assert result.flow_completed is True


@pytest.mark.asyncio
async def test_contact_assignee_gets_magic_link(service, flow_repo, step_repo, notification_repo):
    definition = flow(step("sign", name="Sign Contract", config={"assignee": "Client"}), step("done"))
    run = await start(service, flow_repo, definition, role_assignments={"Client": "C1"})
    rows = await rows_by_step(step_repo, run.flow_run_id)

    assert rows["sign"].assigned_to_contact_id == "C1"
    assigned = notifications_of(notification_repo, "TASK_ASSIGNED", rows["sign"].step_execution_id)
    assert len(assigned) == 1
    assert assigned[0].recipients == ["ada@example.com"]
    assert assigned[0].payload["step_name"] == "Sign Contract"
    assert "/task/" in assigned[0].payload["task_url"]


@pytest.mark.asyncio
async def test_missing_contact_does_not_block_activation(service, flow_repo, step_repo, notification_repo):
    definition = flow(step("sign", config={"assignee": "Client"}))
    run = await start(service, flow_repo, definition, role_assignments={"Client": "C-UNKNOWN"})
    rows = await rows_by_step(step_repo, run.flow_run_id)

    assert rows["sign"].status == StepExecutionStatus.IN_PROGRESS
    assert notifications_of(notification_repo, "TASK_ASSIGNED") == []


@pytest.mark.asyncio
async def test_due_job_is_scheduled_and_cancelled(service, flow_repo, step_repo, notification_repo):
    definition = flow(step("review", due={"value": 2, "unit": "DAYS"}), step("done"))
    run = await start(service, flow_repo, definition)
    rows = await rows_by_step(step_repo, run.flow_run_id)
    review_id = rows["review"].step_execution_id

    assert rows["review"].due_at is not None
    [due_job] = notifications_of(notification_repo, "STEP_DUE", review_id)
    assert due_job.status == "PENDING"
    assert due_job.send_after == rows["review"].due_at

    await service.complete_step(review_id)

    [due_job] = notifications_of(notification_repo, "STEP_DUE", review_id)
    assert due_job.status == "CANCELLED"

    [completed_notice] = notifications_of(notification_repo, "STEP_COMPLETED", review_id)
    assert completed_notice.status == "PENDING"
