"""Group-assigned step tests."""

import pytest

from flowrun.domain.enums import AssigneeStatus, CompletionMode, StepExecutionStatus
from flowrun.domain.errors import InvalidStateError
from flowrun.engine.group_completion import GROUP_COMPLETION_KEY, is_group_satisfied

from tests.factories import flow, notifications_of, path, rows_by_step, step


async def start_group_run(service, flow_repo, step_repo, mode, people=("C1", "C2", "C3")):
    definition = flow(
        step("approve", config={"assignees": ["Reviewers"]}, completion_mode=mode),
        step("after"),
    )
    await flow_repo.save(definition)
    run = await service.start_run(
        definition.flow_id,
        started_by_id="USR-1",
        role_assignments={"Reviewers": list(people)}
    )
    rows = await rows_by_step(step_repo, run.flow_run_id)
    assignees = await step_repo.list_assignees(rows["approve"].step_execution_id)
    return run, rows, assignees


@pytest.mark.parametrize("mode,completed,total,expected", [
    (CompletionMode.ANY_ONE, 1, 3, True),
    (CompletionMode.ANY_ONE, 0, 3, False),
    (CompletionMode.ALL, 2, 3, False),
    (CompletionMode.ALL, 3, 3, True),
    (CompletionMode.ALL, 0, 0, False),
    (CompletionMode.MAJORITY, 2, 3, True),
    (CompletionMode.MAJORITY, 1, 3, False),
    (CompletionMode.MAJORITY, 2, 4, False),
    (CompletionMode.MAJORITY, 3, 4, True),
])
def test_is_group_satisfied(mode, completed, total, expected):
    assert is_group_satisfied(mode, completed, total) is expected


@pytest.mark.asyncio
async def test_group_assignment_issues_one_link_per_contact(service, flow_repo, step_repo, notification_repo):
    run, rows, assignees = await start_group_run(service, flow_repo, step_repo, "MAJORITY")
    approve = rows["approve"]

    assert approve.status == StepExecutionStatus.IN_PROGRESS
    assert approve.is_group_assignment is True
    assert approve.completion_mode == CompletionMode.MAJORITY
    assert sorted(a.contact_id for a in assignees) == ["C1", "C2", "C3"]

    assigned = notifications_of(notification_repo, "TASK_ASSIGNED", approve.step_execution_id)
    assert sorted(n.recipients[0] for n in assigned) == [
        "ada@example.com", "grace@example.com", "linus@example.com"
    ]


@pytest.mark.asyncio
async def test_majority_of_three(service, flow_repo, step_repo):
    run, rows, assignees = await start_group_run(service, flow_repo, step_repo, "MAJORITY")
    approve_id = rows["approve"].step_execution_id

    first = await service.complete_assignee(approve_id, assignees[0].assignee_id, {"vote": "yes"})
    assert (first.advanced, first.completed_count, first.total_count) == (False, 1, 3)

    second = await service.complete_assignee(approve_id, assignees[1].assignee_id, {"vote": "no"})
    assert (second.advanced, second.completed_count, second.total_count) == (True, 2, 3)

    rows = await rows_by_step(step_repo, run.flow_run_id)
    assert rows["approve"].status == StepExecutionStatus.COMPLETED
    assert rows["after"].status == StepExecutionStatus.IN_PROGRESS

    summary = rows["approve"].result_data[GROUP_COMPLETION_KEY]
    assert summary["mode"] == "MAJORITY"
    assert summary["completed_assignees"] == 2
    assert summary["total_assignees"] == 3
    assert len(summary["submissions"]) == 2
    assert rows["approve"].result_data["vote"] == "no"

    late = await service.complete_assignee(approve_id, assignees[2].assignee_id, {"vote": "yes"})
    assert late.advanced is False
    assert late.total_count == 3


@pytest.mark.asyncio
async def test_all_mode_waits_for_everyone(service, flow_repo, step_repo):
    run, rows, assignees = await start_group_run(service, flow_repo, step_repo, "ALL", people=("C1", "C2"))
    approve_id = rows["approve"].step_execution_id

    first = await service.complete_assignee(approve_id, assignees[0].assignee_id, {})
    assert first.advanced is False

    second = await service.complete_assignee(approve_id, assignees[1].assignee_id, {})
    assert second.advanced is True
    assert second.completed_count == 2


@pytest.mark.asyncio
async def test_same_assignee_submitting_twice_counts_once(service, flow_repo, step_repo):
    run, rows, assignees = await start_group_run(service, flow_repo, step_repo, "ALL", people=("C1", "C2"))
    approve_id = rows["approve"].step_execution_id

    await service.complete_assignee(approve_id, assignees[0].assignee_id, {})
    again = await service.complete_assignee(approve_id, assignees[0].assignee_id, {})

    assert again.advanced is False
    assert again.completed_count == 1


@pytest.mark.asyncio
async def test_default_mode_is_any_one(service, flow_repo, step_repo):
    run, rows, assignees = await start_group_run(service, flow_repo, step_repo, None, people=("C1", "C2"))

    assert rows["approve"].completion_mode == CompletionMode.ANY_ONE

    result = await service.complete_assignee(rows["approve"].step_execution_id, assignees[1].assignee_id, {})
    assert result.advanced is True


@pytest.mark.asyncio
async def test_group_step_rejects_single_completion(service, flow_repo, step_repo):
    run, rows, assignees = await start_group_run(service, flow_repo, step_repo, "ALL")

    with pytest.raises(InvalidStateError):
        await service.complete_step(rows["approve"].step_execution_id, {})


@pytest.mark.asyncio
async def test_group_member_completes_with_magic_link(service, flow_repo, step_repo, notification_repo):
    run, rows, assignees = await start_group_run(service, flow_repo, step_repo, "ANY_ONE", people=("C1", "C2"))
    approve_id = rows["approve"].step_execution_id
    [link] = [
        n for n in notifications_of(notification_repo, "TASK_ASSIGNED", approve_id)
        if n.recipients == ["grace@example.com"]
    ]
    token = link.payload["task_url"].rsplit("/", 1)[-1]

    result = await service.complete_with_magic_link(token, {"vote": "yes"})

    assert result.advanced is True
    [grace] = [a for a in await step_repo.list_assignees(approve_id) if a.contact_id == "C2"]
    assert grace.result_data == {"vote": "yes"}


@pytest.mark.asyncio
async def test_submission_to_a_pending_step_is_ignored(service, flow_repo, step_repo):
    run, rows, assignees = await start_group_run(service, flow_repo, step_repo, "ANY_ONE", people=("C1", "C2"))

    result = await service.complete_assignee(rows["after"].step_execution_id, assignees[0].assignee_id, {})

    assert (result.advanced, result.completed_count, result.total_count) == (False, 0, 0)
    stored = await step_repo.list_assignees(rows["approve"].step_execution_id)
    assert [a.status for a in stored] == [AssigneeStatus.PENDING, AssigneeStatus.PENDING]


@pytest.mark.asyncio
async def test_assignee_of_another_group_step_is_not_recorded(service, flow_repo, step_repo):
    definition = flow(
        step("split", "PARALLEL_BRANCH", paths=[
            path("A", step("legal", config={"assignees": ["Legal"]})),
            path("B", step("finance", config={"assignees": ["Finance"]})),
        ]),
        step("after"),
    )
    await flow_repo.save(definition)
    run = await service.start_run(
        definition.flow_id,
        role_assignments={"Legal": ["C1", "C2"], "Finance": ["C2", "C3"]}
    )
    rows = await rows_by_step(step_repo, run.flow_run_id)
    [legal_assignee, _] = await step_repo.list_assignees(rows["legal"].step_execution_id)

    result = await service.complete_assignee(rows["finance"].step_execution_id, legal_assignee.assignee_id, {})

    assert (result.advanced, result.completed_count, result.total_count) == (False, 0, 2)
    legal = await step_repo.list_assignees(rows["legal"].step_execution_id)
    assert all(a.status == AssigneeStatus.PENDING for a in legal)
    rows = await rows_by_step(step_repo, run.flow_run_id)
    assert rows["finance"].status == StepExecutionStatus.IN_PROGRESS
