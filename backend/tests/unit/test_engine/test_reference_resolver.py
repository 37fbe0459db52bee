"""Reference resolution tests."""

from flowrun.domain.models import EvaluationContext, WorkspaceInfo
from flowrun.engine.reference_resolver import (
    has_tokens, parse_tokens, resolve_path, resolve_reference, stringify, substitute_tokens
)


CONTEXT = EvaluationContext(
    kickoff_data={"Customer Name": "Acme", "address": {"country": "DE"}, "a.b": "dotted key"},
    role_assignments={"Client": "C1", "Manager": {"contactId": "C2", "name": "Grace"}},
    step_outputs={"Intake": {"Budget": 2500.0, "Approved": True}},
    workspace=WorkspaceInfo(id="ORG-1", name="Acme Workspace")
)


def test_parse_tokens_requires_separator():
    tokens = parse_tokens("Hello {Kickoff / Customer Name}, see {notatoken} and {Intake / Budget}")

    assert [(t.source, t.field) for t in tokens] == [("Kickoff", "Customer Name"), ("Intake", "Budget")]
    assert has_tokens("{Kickoff / Customer Name}")
    assert not has_tokens("{notatoken}")
    assert not has_tokens(42)


def test_substitute_tokens_in_text():
    text = "Dear {Role: Manager / Name} of {Workspace / Name}, budget {Intake / Budget}"
    assert substitute_tokens(text, CONTEXT) == "Dear Grace of Acme Workspace, budget 2500"


def test_unresolved_token_becomes_empty():
    assert substitute_tokens("[{Kickoff / Missing}]", CONTEXT) == "[]"


def test_role_assigned_as_contact_id():
    assert resolve_reference("{Role: Client / Contact ID}", CONTEXT) == "C1"
    assert resolve_reference("{Role: Client / Name}", CONTEXT) == ""
    assert resolve_reference("{Role: Manager / Contact ID}", CONTEXT) == "C2"


def test_field_paths():
    assert resolve_path("Customer Name", CONTEXT) == "Acme"
    assert resolve_path("kickoff.address.country", CONTEXT) == "DE"
    assert resolve_path("address.country", CONTEXT) == "DE"
    assert resolve_path("a.b", CONTEXT) == "dotted key"
    assert resolve_path("steps.Intake.Approved", CONTEXT) is True
    assert resolve_path("roles.Manager.name", CONTEXT) == "Grace"
    assert resolve_path("workspace.id", CONTEXT) == "ORG-1"
    assert resolve_path("", CONTEXT) is None


def test_stringify():
    assert stringify(None) == ""
    assert stringify(False) == "false"
    assert stringify(3.0) == "3"
    assert stringify(["a", 1]) == "a,1"
    assert stringify({"b": 1, "a": 2}) == '{"a": 2, "b": 1}'


def test_non_string_reference_is_stringified():
    assert resolve_reference(12, CONTEXT) == "12"
    assert resolve_reference(None, CONTEXT) == ""
