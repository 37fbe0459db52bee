"""Mongo document encoding tests (no database required)."""

from datetime import datetime, timezone

from flowrun.domain.models import FlowDefinition, StepExecution
from flowrun.repositories.mongo_client import encode_value, strip_id, to_document


def test_to_document_keys_by_natural_id_and_keeps_datetimes():
    started = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)
    row = StepExecution(
        step_execution_id="SE-1", flow_run_id="RUN-1", step_id="s1", step_index=0,
        status="IN_PROGRESS", completion_mode="ALL", started_at=started
    )

    doc = to_document(row, "step_execution_id")

    assert doc["_id"] == "SE-1"
    assert doc["status"] == "IN_PROGRESS"
    assert doc["completion_mode"] == "ALL"
    assert doc["started_at"] == started


def test_nested_definitions_round_trip_through_documents():
    flow = FlowDefinition.model_validate({
        "flow_id": "FLOW-1",
        "name": "Flow",
        "steps": [{"id": "split", "type": "PARALLEL_BRANCH", "paths": [
            {"id": "A", "steps": [{"id": "a1", "type": "FORM"}]},
        ]}],
    })

    doc = strip_id(to_document(flow, "flow_id"))

    assert "_id" not in doc
    assert FlowDefinition.model_validate(doc) == flow


def test_encode_value_handles_collections():
    assert encode_value({"statuses": {"a"}, "nested": [{"k": 1}]}) == {"statuses": ["a"], "nested": [{"k": 1}]}
