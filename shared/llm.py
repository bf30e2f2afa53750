"""Shared LLM utilities for agent and evaluator blocks"""
from typing import Optional, Literal
from langchain_openai import ChatOpenAI
from langchain_anthropic import ChatAnthropic
from langchain_core.language_models import BaseChatModel
from shared.config import config


def _detect_provider(model: str) -> Literal["openai", "anthropic"]:
    """Detect provider from model name."""
    if model.startswith(("gpt-", "o3-")):
        return "openai"
    elif model.startswith("claude-"):
        return "anthropic"
    else:
        # Default to OpenAI for backward compatibility
        return "openai"


def get_llm(
    model: Optional[str] = None,
    temperature: float = 0.2,
    api_key: Optional[str] = None,
) -> BaseChatModel:
    """
    Get a configured LLM instance for OpenAI or Anthropic models.

    Args:
        model: Model name (e.g., "gpt-5-mini", "claude-sonnet-4-5"); defaults to config.default_llm_model
        temperature: Temperature setting
        api_key: Optional API key override (provider-specific)

    Returns:
        Configured ChatOpenAI or ChatAnthropic instance
    """
    model = model or config.default_llm_model
    provider = _detect_provider(model)

    if provider == "openai":
        if api_key is None:
            api_key = config.openai_api_key
        if api_key is None or api_key == "":
            raise ValueError("OPENAI_API_KEY not found in environment")

        return ChatOpenAI(
            model=model,
            api_key=api_key,
            use_responses_api=False,
            temperature=temperature,
        )

    elif provider == "anthropic":
        if api_key is None:
            api_key = config.anthropic_api_key
        if api_key is None or api_key == "":
            raise ValueError("ANTHROPIC_API_KEY not found in environment")

        return ChatAnthropic(
            model=model,
            anthropic_api_key=api_key,
            temperature=temperature,
        )

    else:
        raise ValueError(f"Unsupported provider for model: {model}")


def extract_text(content) -> str:
    """
    Extract text content from an LLM response, handling both plain string
    and content-block list formats.
    """
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        text_parts = []
        for item in content:
            if isinstance(item, dict):
                if item.get("type") == "text":
                    text_parts.append(item.get("text", ""))
                elif "text" in item:
                    text_parts.append(item["text"])
            elif isinstance(item, str):
                text_parts.append(item)
        return "\n".join(text_parts) if text_parts else str(content)
    return str(content) if content else ""
