from __future__ import annotations

from typing import Any, Dict, List, Optional

from tortoise.transactions import in_transaction

from shared.database.workflow_models import WorkflowDeploymentVersion
from shared.logger import get_logger
from workflow_core.schema import parse_workflow_state

logger = get_logger(__name__)


class DeploymentNotFoundError(LookupError):
    """Raised when a workflow has no deployment version with the requested number."""


async def get_deployed_state(workflow_id: str) -> Optional[Dict[str, Any]]:
    """Return the state of the most recently created active version, or None."""
    version = (
        await WorkflowDeploymentVersion.filter(workflow_id=workflow_id, is_active=True)
        .order_by("-created_at", "-id")
        .first()
    )
    if version is None:
        return None
    return version.state


async def list_deployment_versions(workflow_id: str) -> List[WorkflowDeploymentVersion]:
    return await WorkflowDeploymentVersion.filter(workflow_id=workflow_id).order_by("-version")


async def create_deployment_version(
    workflow_id: str,
    state: Dict[str, Any],
    *,
    activate: bool = True,
) -> WorkflowDeploymentVersion:
    """
    Publish a new version of a workflow.

    The state is validated (typed block configs, graph checks) before it is
    stored. Activating the new version deactivates the previous one in the
    same transaction.

    Raises:
        ValueError: If the workflow state is invalid
    """
    schema = parse_workflow_state(state)
    normalized = schema.model_dump(mode="json")

    async with in_transaction() as conn:
        latest = (
            await WorkflowDeploymentVersion.filter(workflow_id=workflow_id)
            .using_db(conn)
            .order_by("-version")
            .first()
        )
        version_number = latest.version + 1 if latest else 1
        if activate:
            await WorkflowDeploymentVersion.filter(workflow_id=workflow_id, is_active=True).using_db(conn).update(
                is_active=False
            )
        record = await WorkflowDeploymentVersion.create(
            workflow_id=workflow_id,
            version=version_number,
            state=normalized,
            is_active=activate,
            using_db=conn,
        )

    logger.info(
        f"Created deployment version {version_number} for workflow {workflow_id}",
        extra={"workflow_id": workflow_id, "active": activate},
    )
    return record


async def activate_deployment_version(workflow_id: str, version: int) -> WorkflowDeploymentVersion:
    """Make ``version`` the only active deployment of the workflow."""
    async with in_transaction() as conn:
        record = (
            await WorkflowDeploymentVersion.filter(workflow_id=workflow_id, version=version)
            .using_db(conn)
            .first()
        )
        if record is None:
            raise DeploymentNotFoundError(f"Workflow {workflow_id} has no deployment version {version}")
        await WorkflowDeploymentVersion.filter(workflow_id=workflow_id, is_active=True).exclude(
            id=record.id
        ).using_db(conn).update(is_active=False)
        if not record.is_active:
            record.is_active = True
            await record.save(update_fields=["is_active"], using_db=conn)

    logger.info(f"Activated deployment version {version} for workflow {workflow_id}")
    return record


__all__ = [
    "DeploymentNotFoundError",
    "activate_deployment_version",
    "create_deployment_version",
    "get_deployed_state",
    "list_deployment_versions",
]
