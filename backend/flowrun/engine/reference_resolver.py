"""
Reference Resolver - Resolve data references against an evaluation context

Two reference forms are supported:

Tokens (may be embedded in text, any number per string):
    {Kickoff / Field Label}       - Kickoff form field value
    {Role: RoleName / Name}       - Assigned contact's name (also Email, Contact ID)
    {Workspace / Name}            - Workspace name (also ID)
    {Step Name / Field Label}     - Output field of a completed step (by name or id)

Field paths (the whole expression, no braces):
    region                        - Kickoff field named "region"
    kickoff.region                - Same, namespaced
    steps.<step>.<field>          - Step output field
    roles.<role>.email            - Role assignment attribute
    workspace.name                - Workspace attribute
    address.country               - Dotted path into kickoff data

Anything that cannot be resolved becomes an empty string.
"""
import json
import re
from typing import Any, Dict, List, NamedTuple, Optional

from ..domain.models import EvaluationContext
from ..utils.logger import get_logger

logger = get_logger(__name__)

TOKEN_PATTERN = re.compile(r"\{([^}]+)\}")
TOKEN_SEPARATOR = " / "


class ParsedToken(NamedTuple):
    """A `{source / field}` token found in text"""
    token: str
    source: str
    field: str


def stringify(value: Any) -> str:
    """Render a context value the way it is compared in conditions"""
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (list, tuple, set)):
        return ",".join(stringify(item) for item in value)
    if isinstance(value, dict):
        return json.dumps(value, sort_keys=True, default=str)
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def parse_tokens(text: str) -> List[ParsedToken]:
    """
    Parse reference tokens from a string

    Tokens without the " / " separator are not references and are ignored.
    """
    tokens: List[ParsedToken] = []
    for match in TOKEN_PATTERN.finditer(text or ""):
        inner = match.group(1)
        separator_index = inner.find(TOKEN_SEPARATOR)
        if separator_index == -1:
            continue
        source = inner[:separator_index].strip()
        field = inner[separator_index + len(TOKEN_SEPARATOR):].strip()
        if source and field:
            tokens.append(ParsedToken(match.group(0), source, field))
    return tokens


def has_tokens(text: Any) -> bool:
    return isinstance(text, str) and bool(parse_tokens(text))


def _role_attribute(assignment: Any, attribute: str) -> Optional[Any]:
    """Role assignments are stored either as a contact id or as a dict"""
    attribute = attribute.lower().replace(" ", "").replace("_", "")
    if isinstance(assignment, str):
        return assignment if attribute == "contactid" else None
    if not isinstance(assignment, dict):
        return None
    if attribute == "name":
        return assignment.get("name")
    if attribute == "email":
        return assignment.get("email")
    if attribute == "contactid":
        return assignment.get("contact_id") or assignment.get("contactId")
    return None


def _workspace_attribute(context: EvaluationContext, attribute: str) -> Optional[str]:
    if context.workspace is None:
        return None
    attribute = attribute.lower()
    if attribute == "name":
        return context.workspace.name
    if attribute == "id":
        return context.workspace.id
    return None


def resolve_token(source: str, field: str, context: EvaluationContext) -> Optional[str]:
    """
    Resolve a single token to its string value

    Returns:
        The resolved string, or None if the token cannot be resolved
    """
    if source == "Kickoff":
        value = context.kickoff_data.get(field)
    elif source.startswith("Role:"):
        role_name = source[len("Role:"):].strip()
        value = _role_attribute(context.role_assignments.get(role_name), field)
    elif source == "Workspace":
        value = _workspace_attribute(context, field)
    else:
        step_data = context.step_outputs.get(source)
        value = step_data.get(field) if step_data else None

    return None if value is None else stringify(value)


def _walk(data: Any, parts: List[str]) -> Optional[Any]:
    value = data
    for part in parts:
        if isinstance(value, dict):
            value = value.get(part)
        else:
            return None
    return value


def resolve_path(path: str, context: EvaluationContext) -> Optional[Any]:
    """
    Resolve a bare field path (no braces)

    Exact kickoff keys win over dotted interpretation so labels containing
    dots or spaces still resolve.
    """
    path = path.strip()
    if not path:
        return None
    if path in context.kickoff_data:
        return context.kickoff_data[path]

    parts = path.split(".")
    namespace, rest = parts[0].lower(), parts[1:]

    if namespace == "kickoff" and rest:
        return _walk(context.kickoff_data, rest)
    if namespace == "steps" and len(rest) >= 2:
        return _walk(context.step_outputs.get(rest[0]), rest[1:])
    if namespace == "roles" and len(rest) == 2:
        return _role_attribute(context.role_assignments.get(rest[0]), rest[1])
    if namespace == "workspace" and len(rest) == 1:
        return _workspace_attribute(context, rest[0])

    return _walk(context.kickoff_data, parts)


def resolve_reference(expression: Any, context: EvaluationContext) -> str:
    """
    Resolve a reference expression to a string

    Args:
        expression: Token text ("{Kickoff / Region}"), field path ("region"),
            or any other value
        context: Evaluation context

    Returns:
        Resolved string; unresolved references resolve to ""
    """
    if expression is None:
        return ""
    if not isinstance(expression, str):
        return stringify(expression)

    tokens = parse_tokens(expression)
    if tokens:
        return substitute_tokens(expression, context, tokens)

    return stringify(resolve_path(expression, context))


def substitute_tokens(
    text: str,
    context: EvaluationContext,
    tokens: Optional[List[ParsedToken]] = None
) -> str:
    """Replace every token in text; unresolved tokens are replaced by ''"""
    resolved = text
    for token, source, field in tokens if tokens is not None else parse_tokens(text):
        value = resolve_token(source, field, context)
        if value is None:
            logger.debug(f"Unresolved reference {token}")
            value = ""
        resolved = resolved.replace(token, value)
    return resolved


def step_outputs_for(
    step_id: str,
    step_name: Optional[str],
    result_data: Optional[Dict[str, Any]],
    outputs: Dict[str, Dict[str, Any]]
) -> None:
    """Register a completed step's output under its id and its name"""
    if not result_data:
        return
    outputs[step_id] = result_data
    if step_name and step_name != step_id:
        outputs[step_name] = result_data
