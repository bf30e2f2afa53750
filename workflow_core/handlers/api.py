"""
HTTP request block.
"""
from __future__ import annotations

from typing import Any, Dict, Optional

import httpx

from workflow_core.context import ExecutionContext
from workflow_core.errors import HandlerExecutionError
from workflow_core.schema import ApiConfig, BlockType

from .base import BlockHandler, BlockInputs


class ApiHandler(BlockHandler):
    """Performs one HTTP request; non-2xx responses fail the block."""

    block_type = BlockType.API

    def __init__(self, transport: Optional[httpx.AsyncBaseTransport] = None) -> None:
        # Tests inject httpx.MockTransport here
        self.transport = transport

    async def execute(self, context: ExecutionContext, config: ApiConfig, inputs: BlockInputs) -> Dict[str, Any]:
        request_kwargs: Dict[str, Any] = {"headers": config.headers, "params": config.params}
        if config.body is not None:
            if isinstance(config.body, (dict, list)):
                request_kwargs["json"] = config.body
            else:
                request_kwargs["content"] = str(config.body)

        try:
            async with httpx.AsyncClient(timeout=config.timeout_seconds, transport=self.transport) as http_client:
                context.logger.info(f"{config.method} {config.url}")
                response = await http_client.request(config.method, config.url, **request_kwargs)
                response.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise HandlerExecutionError(
                f"API request failed with status {e.response.status_code}: {e.response.text[:500]}"
            ) from e
        except httpx.TimeoutException as e:
            raise HandlerExecutionError(f"API request to {config.url} timed out") from e
        except httpx.HTTPError as e:
            raise HandlerExecutionError(f"API request to {config.url} failed: {e}") from e

        try:
            data = response.json()
        except ValueError:
            data = response.text

        return {
            "output": data,
            "data": data,
            "status": response.status_code,
            "headers": dict(response.headers),
        }


__all__ = ["ApiHandler"]
