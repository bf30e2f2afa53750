"""
Handler behaviour exercised through the engine with fake HTTP transports and chat models.
"""
import json

import httpx
import pytest
from langchain_core.messages import AIMessage

from workflow_core import BlockStatus, ExecutionEngine, RunStatus, build_default_registry
from workflow_core.code_executor import CodeExecutionError, CodeExecutor


def _block(block_id, block_type, **config):
    return {"id": block_id, "type": block_type, "config": config}


def _edge(source, target, branch=None):
    return {"source": source, "target": target, "branch": branch}


USAGE = {"input_tokens": 12, "output_tokens": 8, "total_tokens": 20}


class FakeStructuredModel:
    def __init__(self, parsed, calls):
        self.parsed = parsed
        self.calls = calls

    async def ainvoke(self, messages):
        self.calls.append(messages)
        return {
            "raw": AIMessage(content=json.dumps(self.parsed), usage_metadata=USAGE),
            "parsed": self.parsed,
            "parsing_error": None,
        }


class FakeChatModel:
    """Stands in for a LangChain chat model returned by the llm factory."""

    def __init__(self, reply="", parsed=None):
        self.reply = reply
        self.parsed = parsed or {}
        self.calls = []
        self.schemas = []

    async def ainvoke(self, messages):
        self.calls.append(messages)
        return AIMessage(content=self.reply, usage_metadata=USAGE)

    def with_structured_output(self, schema, **kwargs):
        self.schemas.append(schema)
        return FakeStructuredModel(self.parsed, self.calls)


def _factory(model):
    def build(**kwargs):
        return model

    return build


@pytest.mark.asyncio
async def test_api_block_sends_resolved_request():
    seen = []

    def handle(request):
        seen.append(request)
        return httpx.Response(200, json={"id": 7, "echo": json.loads(request.content)})

    engine = ExecutionEngine(build_default_registry(http_transport=httpx.MockTransport(handle)))
    state = {
        "blocks": [
            _block("start", "trigger"),
            _block(
                "call",
                "api",
                url="https://api.example.com/users/{{start.user_id}}",
                method="post",
                headers={"X-Trace": "{{start.trace}}"},
                body={"name": "{{start.name}}"},
            ),
        ],
        "edges": [_edge("start", "call")],
    }

    result = await engine.run(
        state,
        workflow_id="wf-api",
        input_data={"user_id": 42, "trace": "abc", "name": "Ada"},
    )

    assert result.status == RunStatus.SUCCEEDED
    assert str(seen[0].url) == "https://api.example.com/users/42"
    assert seen[0].method == "POST"
    assert seen[0].headers["X-Trace"] == "abc"
    output = result.output["call"]
    assert output["status"] == 200
    assert output["data"] == {"id": 7, "echo": {"name": "Ada"}}


@pytest.mark.asyncio
async def test_api_block_fails_on_error_status():
    transport = httpx.MockTransport(lambda request: httpx.Response(503, text="unavailable"))
    engine = ExecutionEngine(build_default_registry(http_transport=transport))
    state = {"blocks": [_block("call", "api", url="https://api.example.com/health")]}

    result = await engine.run(state, workflow_id="wf-api-error")

    assert result.status == RunStatus.FAILED
    assert "503" in result.block_states["call"].error


@pytest.mark.asyncio
async def test_agent_block_returns_content_and_cost():
    model = FakeChatModel(reply="A short summary.")
    engine = ExecutionEngine(build_default_registry(llm_factory=_factory(model)))
    state = {
        "blocks": [
            _block("start", "trigger"),
            _block("summarize", "agent", system_prompt="Be brief.", user_prompt="Summarize: {{start.text}}"),
        ],
        "edges": [_edge("start", "summarize")],
    }

    result = await engine.run(state, workflow_id="wf-agent", input_data={"text": "long document"})

    assert result.status == RunStatus.SUCCEEDED
    assert result.output["summarize"]["content"] == "A short summary."
    system, human = model.calls[0]
    assert system.content == "Be brief."
    assert human.content == "Summarize: long document"
    assert result.cost == {"input_tokens": 12, "output_tokens": 8, "total_tokens": 20}


@pytest.mark.asyncio
async def test_agent_block_structured_output():
    model = FakeChatModel(parsed={"sentiment": "positive"})
    engine = ExecutionEngine(build_default_registry(llm_factory=_factory(model)))
    state = {
        "blocks": [
            _block(
                "classify",
                "agent",
                user_prompt="Classify this",
                response_format={"type": "object", "properties": {"sentiment": {"type": "string"}}},
            )
        ],
    }

    result = await engine.run(state, workflow_id="wf-structured")

    assert result.output["classify"]["sentiment"] == "positive"
    assert result.output["classify"]["structured_output"] == {"sentiment": "positive"}
    schema = model.schemas[0]
    assert schema["additionalProperties"] is False
    assert schema["required"] == ["sentiment"]
    assert schema["title"] == "Output_classify"


@pytest.mark.asyncio
async def test_evaluator_scores_are_clamped():
    model = FakeChatModel(parsed={"clarity": 14, "accuracy": 6.5})
    engine = ExecutionEngine(build_default_registry(llm_factory=_factory(model)))
    state = {
        "blocks": [
            _block(
                "judge",
                "evaluator",
                content="Some answer",
                metrics=[
                    {"name": "clarity", "description": "How clear", "max_score": 10},
                    {"name": "accuracy", "description": "How accurate"},
                    {"name": "tone", "description": "How polite", "min_score": 1, "max_score": 5},
                ],
            )
        ],
    }

    result = await engine.run(state, workflow_id="wf-eval")

    assert result.status == RunStatus.SUCCEEDED
    assert result.output["judge"]["scores"] == {"clarity": 10, "accuracy": 6.5, "tone": 1}
    assert result.cost["total_tokens"] == 20


@pytest.mark.asyncio
async def test_trigger_limits_input_fields(engine):
    state = {
        "blocks": [_block("start", "trigger", input_fields=["email"])],
    }

    result = await engine.run(state, workflow_id="wf-trigger", input_data={"email": "a@b.c", "secret": "x"})

    assert result.output["start"] == {"input": {"email": "a@b.c"}, "email": "a@b.c"}


@pytest.mark.asyncio
async def test_function_sees_upstream_inputs(engine):
    state = {
        "blocks": [
            _block("start", "trigger"),
            _block("collect", "function", code='_result = sorted(inputs)'),
        ],
        "edges": [_edge("start", "collect")],
    }

    result = await engine.run(state, workflow_id="wf-inputs", input_data={"a": 1})

    assert result.status_of("collect") == BlockStatus.SUCCEEDED
    assert result.output["collect"]["output"] == ["start"]


@pytest.mark.asyncio
async def test_code_executor_restricts_builtins():
    executor = CodeExecutor(timeout_seconds=5)

    result = await executor.execute("total = sum(values)\n_result = total * 2", {"values": [1, 2, 3]})
    assert result["output"] == 12
    assert result["variables"]["total"] == 6

    with pytest.raises(CodeExecutionError, match="NameError"):
        await executor.execute("_result = open('/etc/passwd').read()")
    with pytest.raises(CodeExecutionError, match="Syntax error"):
        await executor.execute("_result = (")

    assert executor.validate_code("_result = 1") == (True, None)
    assert not executor.validate_code("def")[0]
