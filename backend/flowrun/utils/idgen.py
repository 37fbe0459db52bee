"""ID Generation Utilities"""
import uuid
from datetime import datetime, timezone
from typing import Optional


def generate_id(prefix: Optional[str] = None) -> str:
    """
    Generate a unique ID with optional prefix

    Args:
        prefix: Optional prefix for the ID (e.g., 'RUN', 'SE')

    Returns:
        Unique ID string

    Examples:
        >>> generate_id('RUN')
        'RUN-a1b2c3d4e5f6'
        >>> generate_id()
        'a1b2c3d4e5f6'
    """
    unique_part = uuid.uuid4().hex[:12]

    if prefix:
        return f"{prefix}-{unique_part}"
    return unique_part


def generate_flow_run_id() -> str:
    """Generate flow run ID"""
    return generate_id("RUN")


def generate_step_execution_id() -> str:
    """Generate step execution ID"""
    return generate_id("SE")


def generate_assignee_id() -> str:
    """Generate step execution assignee ID"""
    return generate_id("ASG")


def generate_notification_id() -> str:
    """Generate notification ID"""
    return generate_id("NTF")


def generate_access_token() -> str:
    """Generate an opaque magic link token (full uuid, not shortened)"""
    return uuid.uuid4().hex


def generate_parallel_group_id(branch_step_id: str) -> str:
    """
    Parallel group ID for the sub-steps of a PARALLEL_BRANCH.

    Derived from the branch step so that a repeated expansion of the same
    branch lands on the same group.
    """
    return f"parallel-{branch_step_id}"


def generate_correlation_id() -> str:
    """
    Generate a correlation ID for request tracing

    Returns:
        Correlation ID string with timestamp prefix
    """
    timestamp = datetime.now(timezone.utc).strftime("%Y%m%d%H%M%S")
    unique_part = uuid.uuid4().hex[:8]
    return f"COR-{timestamp}-{unique_part}"
