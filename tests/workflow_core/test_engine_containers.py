"""
Loop and parallel expansion: virtual identities, iteration-local outputs and concurrency bounds.
"""
import asyncio

import pytest

from shared.config import WorkflowConfig
from workflow_core import (
    BlockHandler,
    BlockStatus,
    BlockType,
    ExecutionEngine,
    InMemorySnapshotStore,
    RunStatus,
    build_default_registry,
    encode,
)


def _block(block_id, block_type, **config):
    return {"id": block_id, "type": block_type, "config": config}


def _edge(source, target, branch=None):
    return {"source": source, "target": target, "branch": branch}


class TrackingHandler(BlockHandler):
    """Generic handler that records how many identities run at once."""

    block_type = BlockType.GENERIC

    def __init__(self, delay=0.02):
        self.delay = delay
        self.active = 0
        self.peak = 0
        self.calls = []

    async def execute(self, context, config, inputs):
        self.active += 1
        self.peak = max(self.peak, self.active)
        self.calls.append(context.identity)
        try:
            await asyncio.sleep(self.delay)
        finally:
            self.active -= 1
        return {"identity": context.identity, "item": context.scope.item if context.scope else None}


def _tracking_engine(tracker, **settings):
    return ExecutionEngine(
        build_default_registry(overrides={BlockType.GENERIC: tracker}),
        InMemorySnapshotStore(),
        settings=WorkflowConfig(**settings),
    )


@pytest.mark.asyncio
async def test_loop_expands_body_per_iteration(engine, snapshot_store):
    state = {
        "blocks": [
            _block("start", "trigger"),
            _block("l1", "loop"),
            _block("add", "function", code='_result = loop["index"] + 1'),
            _block("end", "function", code='_result = sum(r["output"] for r in l1["results"])'),
        ],
        "edges": [_edge("start", "l1"), _edge("l1", "add", "start"), _edge("l1", "end")],
        "loops": {"l1": {"loop_type": "for", "count": 3}},
    }

    result = await engine.run(state, workflow_id="wf-loop")

    assert result.status == RunStatus.SUCCEEDED
    identities = [f"add_parallel_l1_iteration_{index}" for index in range(3)]
    for identity in identities:
        assert result.status_of(identity) == BlockStatus.SUCCEEDED
        assert result.block_states[identity].original_id == "add"
        assert result.block_states[identity].container_id == "l1"
    assert "add" not in result.block_states
    assert result.output == {"end": {"output": 6}}

    last_iteration_end = max(result.block_states[identity].ended_at for identity in identities)
    assert result.block_states["end"].started_at >= last_iteration_end

    snapshot = await snapshot_store.get(result.snapshot_id)
    assert snapshot.state_data["outputs"]["l1"] == {
        "results": [{"output": 1}, {"output": 2}, {"output": 3}],
        "count": 3,
    }
    assert snapshot.state_data["containers"]["l1"]["count"] == 3


@pytest.mark.asyncio
async def test_loop_defaults_run_five_iterations_sequentially():
    tracker = TrackingHandler(delay=0.01)
    engine = _tracking_engine(tracker)
    state = {
        "blocks": [_block("start", "trigger"), _block("l1", "loop"), _block("step", "generic")],
        "edges": [_edge("start", "l1"), _edge("l1", "step", "start")],
    }

    result = await engine.run(state, workflow_id="wf-loop-defaults")

    assert result.status == RunStatus.SUCCEEDED
    assert tracker.calls == [encode("step", "l1", index) for index in range(5)]
    assert tracker.peak == 1


@pytest.mark.asyncio
async def test_parallel_respects_max_concurrency():
    tracker = TrackingHandler()
    engine = _tracking_engine(tracker)
    state = {
        "blocks": [_block("start", "trigger"), _block("p1", "parallel"), _block("work", "generic")],
        "edges": [_edge("start", "p1"), _edge("p1", "work", "start")],
        "parallels": {"p1": {"nodes": ["work"], "parallel_type": "count", "count": 6, "max_concurrency": 2}},
    }

    result = await engine.run(state, workflow_id="wf-parallel-bound")

    assert result.status == RunStatus.SUCCEEDED
    assert sorted(tracker.calls) == sorted(encode("work", "p1", index) for index in range(6))
    assert tracker.peak == 2
    assert result.snapshot.state_data["containers"]["p1"]["max_concurrency"] == 2


@pytest.mark.asyncio
async def test_parallel_cap_applies_when_unset():
    tracker = TrackingHandler()
    engine = _tracking_engine(tracker, parallel_max_concurrency=3)
    state = {
        "blocks": [_block("p1", "parallel"), _block("work", "generic")],
        "edges": [_edge("p1", "work", "start")],
        "parallels": {"p1": {"count": 8}},
    }

    result = await engine.run(state, workflow_id="wf-parallel-cap")

    assert result.status == RunStatus.SUCCEEDED
    assert len(tracker.calls) == 8
    assert tracker.peak == 3


@pytest.mark.asyncio
async def test_parallel_collection_keeps_outputs_iteration_local(engine):
    state = {
        "blocks": [
            _block("start", "trigger"),
            _block("p1", "parallel"),
            _block("double", "function", code='_result = parallel["item"] * 2'),
            _block("plus_one", "function", code='_result = double["output"] + 1'),
        ],
        "edges": [_edge("start", "p1"), _edge("p1", "double", "start"), _edge("double", "plus_one")],
        "parallels": {"p1": {"parallel_type": "collection", "collection": "{{start.items}}"}},
    }

    result = await engine.run(state, workflow_id="wf-collection", input_data={"items": [1, 2, 3]})

    assert result.status == RunStatus.SUCCEEDED
    assert result.output["p1"]["results"] == [{"output": 3}, {"output": 5}, {"output": 7}]
    assert result.status_of("plus_one_parallel_p1_iteration_2") == BlockStatus.SUCCEEDED


@pytest.mark.asyncio
async def test_empty_collection_succeeds_with_no_iterations(engine):
    state = {
        "blocks": [_block("l1", "loop"), _block("step", "generic")],
        "edges": [_edge("l1", "step", "start")],
        "loops": {"l1": {"loop_type": "forEach", "collection": "[]"}},
    }

    result = await engine.run(state, workflow_id="wf-empty")

    assert result.status == RunStatus.SUCCEEDED
    assert result.output == {"l1": {"results": [], "count": 0}}
    assert not any(identity.startswith("step") for identity in result.block_states)


@pytest.mark.asyncio
async def test_failed_iteration_fails_container_only(engine):
    state = {
        "blocks": [
            _block("start", "trigger"),
            _block("p1", "parallel"),
            _block("divide", "function", code='_result = 10 // (parallel["index"] - 1)'),
        ],
        "edges": [_edge("start", "p1"), _edge("p1", "divide", "start")],
        "parallels": {"p1": {"count": 3}},
    }

    result = await engine.run(state, workflow_id="wf-iteration-failure")

    assert result.status_of("divide_parallel_p1_iteration_0") == BlockStatus.SUCCEEDED
    assert result.status_of("divide_parallel_p1_iteration_1") == BlockStatus.FAILED
    assert result.status_of("divide_parallel_p1_iteration_2") == BlockStatus.SUCCEEDED
    assert result.status_of("p1") == BlockStatus.FAILED
    assert result.block_states["p1"].error == "1 of 3 iterations failed"
    assert result.status == RunStatus.FAILED


@pytest.mark.asyncio
async def test_invalid_collection_aborts_run(engine):
    state = {
        "blocks": [_block("start", "trigger"), _block("l1", "loop"), _block("step", "generic"), _block("after", "generic")],
        "edges": [_edge("start", "l1"), _edge("l1", "step", "start"), _edge("l1", "after")],
        "loops": {"l1": {"loop_type": "forEach", "collection": "{{start.value}}"}},
    }

    result = await engine.run(state, workflow_id="wf-bad-collection", input_data={"value": 12})

    assert result.status == RunStatus.FAILED
    assert result.status_of("l1") == BlockStatus.FAILED
    assert result.status_of("after") == BlockStatus.SKIPPED
    assert "must be a list" in result.error
