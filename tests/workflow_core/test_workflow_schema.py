import pytest
from pydantic import ValidationError

from workflow_core.schema import (
    AgentConfig,
    BlockType,
    ConditionConfig,
    FunctionConfig,
    parse_workflow_state,
)


def _block(block_id, block_type, **config):
    return {"id": block_id, "type": block_type, "config": config}


def test_configs_are_typed_per_block_type():
    schema = parse_workflow_state(
        {
            "blocks": [
                _block("start", "trigger"),
                _block("ask", "agent", user_prompt="Summarize {{start.text}}"),
                _block("check", "condition", conditions=[{"id": "long", "expression": "True"}]),
                _block("fn", "function", code="_result = 1"),
            ],
            "edges": [
                {"source": "start", "target": "ask"},
                {"source": "ask", "target": "check"},
                {"source": "check", "target": "fn", "branch": "long"},
            ],
        }
    )

    assert isinstance(schema.get_block("ask").config, AgentConfig)
    assert isinstance(schema.get_block("check").config, ConditionConfig)
    assert isinstance(schema.get_block("fn").config, FunctionConfig)


def test_invalid_block_config_rejected():
    with pytest.raises(ValidationError, match="agent block 'ask'"):
        parse_workflow_state({"blocks": [_block("ask", "agent", system_prompt="hi")]})

    with pytest.raises(ValidationError):
        parse_workflow_state({"blocks": [_block("fn", "function", code="x", unexpected=True)]})


def test_unknown_block_type_rejected():
    with pytest.raises(ValidationError):
        parse_workflow_state({"blocks": [_block("x", "teleport")]})


def test_duplicate_ids_and_dangling_edges_rejected():
    with pytest.raises(ValidationError, match="unique"):
        parse_workflow_state({"blocks": [_block("a", "generic"), _block("a", "generic")]})

    with pytest.raises(ValidationError, match="does not exist"):
        parse_workflow_state(
            {"blocks": [_block("a", "generic")], "edges": [{"source": "a", "target": "ghost"}]}
        )


def test_cycles_rejected():
    with pytest.raises(ValidationError, match="cycles"):
        parse_workflow_state(
            {
                "blocks": [_block("a", "generic"), _block("b", "generic")],
                "edges": [{"source": "a", "target": "b"}, {"source": "b", "target": "a"}],
            }
        )


def test_body_derived_from_start_edges():
    schema = parse_workflow_state(
        {
            "blocks": [
                _block("l1", "loop"),
                _block("step", "generic"),
                _block("after_step", "generic"),
                _block("done", "generic"),
            ],
            "edges": [
                {"source": "l1", "target": "step", "branch": "start"},
                {"source": "step", "target": "after_step"},
                {"source": "l1", "target": "done"},
            ],
        }
    )

    assert schema.body_of("l1") == ("step", "after_step")
    assert schema.container_of("step") == "l1"
    assert schema.container_of("done") is None
    assert "l1" in schema.loops


def test_nested_containers_rejected():
    with pytest.raises(ValidationError, match="Nested containers"):
        parse_workflow_state(
            {
                "blocks": [_block("outer", "parallel"), _block("inner", "loop"), _block("x", "generic")],
                "edges": [
                    {"source": "outer", "target": "inner", "branch": "start"},
                    {"source": "inner", "target": "x", "branch": "start"},
                ],
            }
        )


def test_edge_leaving_body_rejected():
    with pytest.raises(ValidationError, match="leaves the body"):
        parse_workflow_state(
            {
                "blocks": [_block("p1", "parallel"), _block("inside", "generic"), _block("outside", "generic")],
                "edges": [
                    {"source": "p1", "target": "outside"},
                    {"source": "inside", "target": "outside"},
                ],
                "parallels": {"p1": {"nodes": ["inside"]}},
            }
        )


def test_edge_entering_body_rejected():
    with pytest.raises(ValidationError, match="enters the body"):
        parse_workflow_state(
            {
                "blocks": [_block("start", "trigger"), _block("p1", "parallel"), _block("inside", "generic")],
                "edges": [{"source": "start", "target": "inside"}],
                "parallels": {"p1": {"nodes": ["inside"]}},
            }
        )


def test_metadata_must_reference_matching_container():
    with pytest.raises(ValidationError, match="does not reference a loop block"):
        parse_workflow_state(
            {"blocks": [_block("p1", "parallel")], "loops": {"p1": {"count": 2}}}
        )


def test_container_defaults_resolved():
    schema = parse_workflow_state({"blocks": [_block("l1", "loop"), _block("p1", "parallel")]})

    loop_settings = schema.loops["l1"].resolve()
    parallel_settings = schema.parallels["p1"].resolve(4)

    assert (loop_settings.mode, loop_settings.count, loop_settings.collection) == ("for", 5, "")
    assert loop_settings.max_concurrency == 1
    assert (parallel_settings.mode, parallel_settings.count) == ("count", 5)
    assert parallel_settings.max_concurrency == 4
    assert parallel_settings.kind == BlockType.PARALLEL


def test_blocks_keyed_by_id_accepted():
    schema = parse_workflow_state(
        {
            "blocks": {
                "start": {"type": "trigger", "config": {}},
                "end": {"type": "response", "config": {"data": "{{start.input}}"}},
            },
            "edges": [{"source": "start", "target": "end"}],
        }
    )

    assert [block.id for block in schema.blocks] == ["start", "end"]


def test_invalid_output_schema_rejected():
    with pytest.raises(ValidationError, match="output_schema"):
        parse_workflow_state(
            {"blocks": [{"id": "a", "type": "generic", "output_schema": {"type": "nonsense"}}]}
        )


@pytest.mark.parametrize(
    "block_id",
    ["add_parallel_l1_iteration_0", "fetch_parallel_x", "step_iteration_2", "a_parallel"],
)
def test_ids_reserved_for_iterations_rejected(block_id):
    with pytest.raises(ValidationError, match="reserved"):
        parse_workflow_state({"blocks": [_block("start", "trigger"), _block(block_id, "generic")]})


def test_ids_with_partial_marker_text_accepted():
    schema = parse_workflow_state(
        {"blocks": [_block("parallel_fetch", "generic"), _block("iteration_count", "generic")]}
    )

    assert schema.has_block("parallel_fetch")
    assert schema.has_block("iteration_count")
