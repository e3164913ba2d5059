"""Workflow modules."""

from tandem.workflows.team import (
    TeamWorkflow,
    build_workflow,
    execute_team_workflow,
    generate_task_id,
    resolve_specification,
)

__all__ = [
    "TeamWorkflow",
    "build_workflow",
    "execute_team_workflow",
    "generate_task_id",
    "resolve_specification",
]
