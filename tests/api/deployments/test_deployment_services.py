import pytest

from api.deployments.services import (
    DeploymentNotFoundError,
    activate_deployment_version,
    create_deployment_version,
    get_deployed_state,
    list_deployment_versions,
)
from shared.database.workflow_models import WorkflowDeploymentVersion


def _state(text):
    return {
        "blocks": [
            {"id": "start", "type": "trigger"},
            {"id": "reply", "type": "response", "config": {"data": text}},
        ],
        "edges": [{"source": "start", "target": "reply"}],
    }


def _reply_data(state):
    reply = next(block for block in state["blocks"] if block["id"] == "reply")
    return reply["config"]["data"]


@pytest.mark.asyncio
async def test_no_deployment_returns_none(db):
    assert await get_deployed_state("wf-none") is None


@pytest.mark.asyncio
async def test_new_version_replaces_active_one(db):
    first = await create_deployment_version("wf-1", _state("v1"))
    second = await create_deployment_version("wf-1", _state("v2"))

    assert (first.version, second.version) == (1, 2)
    state = await get_deployed_state("wf-1")
    assert _reply_data(state) == "v2"

    versions = await list_deployment_versions("wf-1")
    assert [(v.version, v.is_active) for v in versions] == [(2, True), (1, False)]


@pytest.mark.asyncio
async def test_inactive_versions_are_ignored(db):
    await create_deployment_version("wf-2", _state("live"))
    await create_deployment_version("wf-2", _state("draft"), activate=False)

    state = await get_deployed_state("wf-2")

    assert _reply_data(state) == "live"


@pytest.mark.asyncio
async def test_newest_active_version_wins(db):
    await create_deployment_version("wf-3", _state("older"), activate=False)
    await create_deployment_version("wf-3", _state("newer"), activate=False)
    await WorkflowDeploymentVersion.filter(workflow_id="wf-3").update(is_active=True)

    state = await get_deployed_state("wf-3")

    assert _reply_data(state) == "newer"


@pytest.mark.asyncio
async def test_activate_previous_version(db):
    await create_deployment_version("wf-4", _state("v1"))
    await create_deployment_version("wf-4", _state("v2"))

    await activate_deployment_version("wf-4", 1)

    assert _reply_data(await get_deployed_state("wf-4")) == "v1"
    assert await WorkflowDeploymentVersion.filter(workflow_id="wf-4", is_active=True).count() == 1

    with pytest.raises(DeploymentNotFoundError):
        await activate_deployment_version("wf-4", 9)


@pytest.mark.asyncio
async def test_invalid_state_is_not_published(db):
    with pytest.raises(ValueError):
        await create_deployment_version("wf-5", {"blocks": [{"id": "a", "type": "agent", "config": {}}]})

    assert await WorkflowDeploymentVersion.filter(workflow_id="wf-5").count() == 0
