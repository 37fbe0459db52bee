"""In-memory repository tests: the guarantees the engine relies on."""

import pytest

from flowrun.domain.enums import AssigneeStatus, FlowRunStatus, StepExecutionStatus
from flowrun.domain.errors import AlreadyExistsError
from flowrun.domain.models import FlowRun, StepExecution, StepExecutionAssignee
from flowrun.utils.time import utc_now


def execution(step_execution_id, step_id="s1", branch_path=None, status="PENDING"):
    return StepExecution(
        step_execution_id=step_execution_id,
        flow_run_id="RUN-1",
        step_id=step_id,
        step_index=0,
        status=status,
        branch_path=branch_path
    )


@pytest.mark.asyncio
async def test_create_many_drops_duplicate_branch_rows(step_repo):
    first = await step_repo.create_many([execution("SE-1", "x", "P1"), execution("SE-2", "y", "P1")])
    second = await step_repo.create_many([execution("SE-3", "x", "P1"), execution("SE-4", "x", "P2")])

    assert first == ["SE-1", "SE-2"]
    assert second == ["SE-4"]
    assert len(await step_repo.list_for_run("RUN-1")) == 3


@pytest.mark.asyncio
async def test_transition_status_is_conditional(step_repo):
    await step_repo.create_many([execution("SE-1")])

    moved = await step_repo.transition_status(
        "SE-1", {StepExecutionStatus.PENDING}, StepExecutionStatus.IN_PROGRESS, {"started_at": utc_now()}
    )
    lost = await step_repo.transition_status(
        "SE-1", {StepExecutionStatus.PENDING}, StepExecutionStatus.IN_PROGRESS
    )
    missing = await step_repo.transition_status(
        "SE-404", {StepExecutionStatus.PENDING}, StepExecutionStatus.IN_PROGRESS
    )

    assert moved.status == StepExecutionStatus.IN_PROGRESS
    assert moved.started_at is not None
    assert lost is None
    assert missing is None


@pytest.mark.asyncio
async def test_returned_rows_are_copies(step_repo):
    await step_repo.create_many([execution("SE-1")])

    row = await step_repo.get("SE-1")
    row.result_data["leak"] = True

    assert (await step_repo.get("SE-1")).result_data == {}


@pytest.mark.asyncio
async def test_assignee_completes_once(step_repo):
    await step_repo.create_assignees([
        StepExecutionAssignee(assignee_id="ASG-1", step_execution_id="SE-1", contact_id="C1")
    ])

    first = await step_repo.complete_assignee("SE-1", "ASG-1", {"vote": "yes"}, utc_now())
    second = await step_repo.complete_assignee("SE-1", "ASG-1", {"vote": "no"}, utc_now())

    assert first.status == AssigneeStatus.COMPLETED
    assert second is None
    [stored] = await step_repo.list_assignees("SE-1")
    assert stored.result_data == {"vote": "yes"}


@pytest.mark.asyncio
async def test_assignee_of_another_step_is_not_completed(step_repo):
    await step_repo.create_assignees([
        StepExecutionAssignee(assignee_id="ASG-1", step_execution_id="SE-1", contact_id="C1")
    ])

    assert await step_repo.complete_assignee("SE-2", "ASG-1", {"vote": "yes"}, utc_now()) is None
    [stored] = await step_repo.list_assignees("SE-1")
    assert stored.status == AssigneeStatus.PENDING

    with pytest.raises(AlreadyExistsError):
        await step_repo.create_assignees([
            StepExecutionAssignee(assignee_id="ASG-1", step_execution_id="SE-1")
        ])


@pytest.mark.asyncio
async def test_run_transition_and_child_lookup(run_repo):
    await run_repo.create(FlowRun(flow_run_id="RUN-1", flow_id="F", name="Parent"))
    await run_repo.create(FlowRun(
        flow_run_id="RUN-2", flow_id="F", name="Child",
        parent_run_id="RUN-1", parent_step_execution_id="SE-9"
    ))

    done = await run_repo.transition_status("RUN-1", {FlowRunStatus.IN_PROGRESS}, FlowRunStatus.COMPLETED)
    again = await run_repo.transition_status("RUN-1", {FlowRunStatus.IN_PROGRESS}, FlowRunStatus.COMPLETED)

    assert done.status == FlowRunStatus.COMPLETED
    assert again is None
    assert (await run_repo.find_by_parent_step("SE-9")).flow_run_id == "RUN-2"
    assert await run_repo.find_by_parent_step("SE-0") is None

    with pytest.raises(AlreadyExistsError):
        await run_repo.create(FlowRun(flow_run_id="RUN-1", flow_id="F", name="Again"))
