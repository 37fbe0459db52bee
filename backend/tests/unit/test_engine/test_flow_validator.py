"""Flow definition validation tests."""

from flowrun.engine.flow_validator import validate_flow


def definition(*steps):
    return {"flow_id": "FLOW-1", "name": "Onboarding", "steps": list(steps)}


def test_valid_flow_has_no_problems():
    report = validate_flow(definition(
        {"id": "intake", "type": "FORM"},
        {"id": "route", "type": "MULTI_CHOICE_BRANCH", "paths": [
            {"id": "US", "condition": {"source": "Region", "operator": "EQUALS", "value": "US"},
             "steps": [{"id": "us_review", "type": "FORM"}]},
            {"id": "OTHER", "isDefault": True, "steps": [{"id": "review", "type": "FORM"}]},
        ]},
    ))

    assert report.is_valid
    assert report.errors == []
    assert report.warnings == []


def test_duplicate_step_ids_are_errors():
    report = validate_flow(definition(
        {"id": "a", "type": "FORM"},
        {"id": "split", "type": "PARALLEL_BRANCH", "paths": [
            {"id": "P1", "steps": [{"id": "a", "type": "TODO"}]},
        ]},
    ))

    assert not report.is_valid
    assert "Duplicate step id: a" in report.errors


def test_unknown_operators_are_errors():
    report = validate_flow(definition(
        {"id": "a", "type": "FORM", "skipCondition": {"source": "x", "operator": "MATCHES"}},
        {"id": "route", "type": "MULTI_CHOICE_BRANCH", "paths": [
            {"id": "P1", "isDefault": True, "condition": {"source": "x", "operator": "LIKE"},
             "steps": [{"id": "b", "type": "FORM"}]},
        ]},
    ))

    assert len(report.errors) == 2


def test_fallback_behaviour_is_reported_as_warnings():
    report = validate_flow(definition(
        {"id": "choose", "type": "SINGLE_CHOICE_BRANCH"},
        {"id": "route", "type": "MULTI_CHOICE_BRANCH", "paths": [
            {"id": "P1", "condition": {"source": "x", "operator": "EQUALS", "value": "1"}, "steps": []},
        ]},
        {"id": "robot", "type": "TELEPORT"},
    ))

    assert report.is_valid
    assert len(report.warnings) == 4


def test_sub_flow_needs_a_child_flow():
    report = validate_flow(definition({"id": "child", "type": "SUB_FLOW", "config": {}}))

    assert report.errors == ["SUB_FLOW step child has no child flow configured"]


def test_invalid_document():
    report = validate_flow({"name": "No id"})

    assert not report.is_valid
    assert report.errors[0].startswith("Invalid definition")


def test_empty_flow():
    assert validate_flow(definition()).errors == ["Flow has no steps"]
