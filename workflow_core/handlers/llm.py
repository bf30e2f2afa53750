"""
Agent and evaluator blocks backed by LangChain chat models.
"""
from __future__ import annotations

import copy
import json
from typing import Any, Callable, Dict, List, Optional

from langchain_core.language_models import BaseChatModel
from langchain_core.messages import BaseMessage, HumanMessage, SystemMessage

from shared.llm import extract_text, get_llm
from workflow_core.context import ExecutionContext
from workflow_core.errors import HandlerExecutionError
from workflow_core.schema import AgentConfig, BlockType, EvaluatorConfig

from .base import BlockHandler, BlockInputs

LLMFactory = Callable[..., BaseChatModel]


def _prepare_structured_output_schema(schema: Dict[str, Any], block_id: str) -> Dict[str, Any]:
    """
    Prepare a JSON schema for provider structured output.

    Strict mode requires an object schema with a title,
    ``additionalProperties: false`` and every property listed as required.
    """
    prepared_schema = copy.deepcopy(schema)

    if prepared_schema.get("type") != "object":
        prepared_schema["type"] = "object"

    if "title" not in prepared_schema:
        clean_id = "".join(c if c.isalnum() else "_" for c in block_id)
        prepared_schema["title"] = f"Output_{clean_id}"

    if "additionalProperties" not in prepared_schema:
        prepared_schema["additionalProperties"] = False

    properties = prepared_schema.get("properties", {})
    if properties and "required" not in prepared_schema:
        prepared_schema["required"] = list(properties.keys())

    for prop_def in properties.values():
        if isinstance(prop_def, dict) and "type" not in prop_def:
            prop_def["type"] = "string"

    return prepared_schema


def _usage_cost(message: Any) -> Dict[str, float]:
    usage = getattr(message, "usage_metadata", None) or {}
    return {
        key: usage[key]
        for key in ("input_tokens", "output_tokens", "total_tokens")
        if isinstance(usage.get(key), (int, float))
    }


def _as_dict(result: Any) -> Dict[str, Any]:
    if hasattr(result, "model_dump"):
        return result.model_dump()
    if isinstance(result, dict):
        return result
    try:
        return json.loads(str(result))
    except (json.JSONDecodeError, TypeError):
        return {"result": str(result)}


class AgentHandler(BlockHandler):
    """Single LLM call with optional structured output."""

    block_type = BlockType.AGENT

    def __init__(self, llm_factory: Optional[LLMFactory] = None) -> None:
        self.llm_factory = llm_factory or get_llm

    async def execute(self, context: ExecutionContext, config: AgentConfig, inputs: BlockInputs) -> Dict[str, Any]:
        if not str(config.user_prompt).strip():
            raise HandlerExecutionError(f"Agent block '{context.identity}' resolved to an empty user_prompt")

        messages: List[BaseMessage] = []
        if config.system_prompt:
            messages.append(SystemMessage(content=str(config.system_prompt)))
        messages.append(HumanMessage(content=str(config.user_prompt)))

        llm = self.llm_factory(model=config.model, temperature=config.temperature)
        context.logger.info(f"Agent call with model={config.model or 'default'}")

        if config.response_format and config.response_format.get("properties"):
            prepared_schema = _prepare_structured_output_schema(config.response_format, context.block.id)
            structured_llm = llm.with_structured_output(prepared_schema, method="json_schema", include_raw=True)
            result = await structured_llm.ainvoke(messages)
            if result.get("parsing_error") is not None:
                raise HandlerExecutionError(f"Structured output parsing failed: {result['parsing_error']}")
            context.add_cost(_usage_cost(result.get("raw")))
            structured_output = _as_dict(result.get("parsed"))
            block_output = {
                "content": json.dumps(structured_output, indent=2),
                "structured_output": structured_output,
            }
            block_output.update(structured_output)
            return block_output

        response = await llm.ainvoke(messages)
        cost = _usage_cost(response)
        context.add_cost(cost)
        content = extract_text(response.content)
        return {"content": content, "output": content, "usage": cost}


class EvaluatorHandler(BlockHandler):
    """Scores content against named metrics; scores are clamped to each metric's range."""

    block_type = BlockType.EVALUATOR

    def __init__(self, llm_factory: Optional[LLMFactory] = None) -> None:
        self.llm_factory = llm_factory or get_llm

    def _score_schema(self, config: EvaluatorConfig, block_id: str) -> Dict[str, Any]:
        properties = {
            metric.name: {
                "type": "number",
                "description": f"{metric.description} (score from {metric.min_score} to {metric.max_score})".strip(),
            }
            for metric in config.metrics
        }
        return _prepare_structured_output_schema({"type": "object", "properties": properties}, block_id)

    async def execute(self, context: ExecutionContext, config: EvaluatorConfig, inputs: BlockInputs) -> Dict[str, Any]:
        metric_lines = "\n".join(
            f"- {metric.name} ({metric.min_score}-{metric.max_score}): {metric.description}"
            for metric in config.metrics
        )
        messages = [
            SystemMessage(content="You are an evaluator. Score the content on each metric and reply with numbers only."),
            HumanMessage(content=f"Metrics:\n{metric_lines}\n\nContent:\n{config.content}"),
        ]

        llm = self.llm_factory(model=config.model, temperature=0)
        structured_llm = llm.with_structured_output(
            self._score_schema(config, context.block.id), method="json_schema", include_raw=True
        )
        result = await structured_llm.ainvoke(messages)
        if result.get("parsing_error") is not None:
            raise HandlerExecutionError(f"Evaluator output parsing failed: {result['parsing_error']}")
        context.add_cost(_usage_cost(result.get("raw")))

        raw_scores = _as_dict(result.get("parsed"))
        scores: Dict[str, float] = {}
        for metric in config.metrics:
            try:
                value = float(raw_scores.get(metric.name, metric.min_score))
            except (TypeError, ValueError):
                value = metric.min_score
            scores[metric.name] = min(max(value, metric.min_score), metric.max_score)

        return {"output": scores, "scores": scores, **scores}


__all__ = ["AgentHandler", "EvaluatorHandler", "LLMFactory"]
