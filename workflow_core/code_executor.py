"""
Python code execution service for function, condition and router blocks.
Executes Python code in a restricted namespace with access to run context.
"""
import asyncio
import textwrap
import traceback
from typing import Any, Dict, Optional, Tuple

from shared.config import config
from shared.logger import get_logger

logger = get_logger("workflow_core.code_executor")


class CodeExecutionError(Exception):
    """Exception raised during code execution."""
    pass


SAFE_BUILTINS = {
    'abs': abs,
    'all': all,
    'any': any,
    'bool': bool,
    'dict': dict,
    'enumerate': enumerate,
    'Exception': Exception,
    'filter': filter,
    'float': float,
    'int': int,
    'isinstance': isinstance,
    'KeyError': KeyError,
    'len': len,
    'list': list,
    'map': map,
    'max': max,
    'min': min,
    'range': range,
    'reversed': reversed,
    'round': round,
    'set': set,
    'sorted': sorted,
    'str': str,
    'sum': sum,
    'tuple': tuple,
    'type': type,
    'ValueError': ValueError,
    'zip': zip,
    'print': print,  # Allow print for debugging
}


class CodeExecutor:
    """
    Executes Python code blocks in a restricted environment.

    Code assigns its result to ``_result``; names from the supplied context
    are available as globals.
    """

    def __init__(self, timeout_seconds: Optional[float] = None):
        """
        Initialize code executor.

        Args:
            timeout_seconds: Maximum execution time in seconds
                (defaults to config.code_execution_timeout_seconds)
        """
        self.timeout_seconds = timeout_seconds or config.code_execution_timeout_seconds

    async def execute(
        self,
        code: str,
        context: Optional[Dict[str, Any]] = None,
        timeout_seconds: Optional[float] = None,
    ) -> Dict[str, Any]:
        """
        Execute Python code with workflow context.

        Args:
            code: Python code to execute
            context: Names exposed to the code (inputs, loop, parallel, ...)
            timeout_seconds: Per-call override of the executor timeout

        Returns:
            Dictionary with execution results:
            - 'output': The value assigned to ``_result``
            - 'variables': Top-level names left in the namespace

        Raises:
            CodeExecutionError: If execution fails or times out
        """
        if not code or not code.strip():
            return {'output': None, 'variables': dict(context or {})}

        exec_context: Dict[str, Any] = {
            '__builtins__': dict(SAFE_BUILTINS),
            '__name__': '__workflow__',
        }
        if context:
            exec_context.update(context)
        exec_context['_result'] = None

        timeout = timeout_seconds or self.timeout_seconds
        try:
            await asyncio.wait_for(self._execute_code(code, exec_context), timeout=timeout)
        except asyncio.TimeoutError:
            error_msg = f"Code execution timed out after {timeout} seconds"
            logger.error(error_msg)
            raise CodeExecutionError(error_msg)
        except CodeExecutionError:
            raise
        except Exception as e:
            logger.debug(f"Code execution error: {e}\n{traceback.format_exc()}")
            raise CodeExecutionError(f"{type(e).__name__}: {e}") from e

        output = exec_context.get('_result')
        variables = {
            k: v for k, v in exec_context.items()
            if not k.startswith('__') and k != '_result'
        }
        return {'output': output, 'variables': variables}

    async def evaluate(self, expression: str, context: Optional[Dict[str, Any]] = None) -> Any:
        """Evaluate a single Python expression and return its value."""
        result = await self.execute(f"_result = ({expression})", context)
        return result['output']

    async def _execute_code(self, code: str, context: Dict[str, Any]) -> None:
        """Execute code in the given context on the default executor."""
        try:
            compiled = compile(textwrap.dedent(code), '<workflow>', 'exec')
        except SyntaxError as e:
            raise CodeExecutionError(f"Syntax error: {e}") from e

        # Execute in a separate thread to avoid blocking
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(None, exec, compiled, context)

    def validate_code(self, code: str) -> Tuple[bool, Optional[str]]:
        """
        Validate code syntax without executing.

        Returns:
            Tuple of (is_valid, error_message)
        """
        try:
            compile(textwrap.dedent(code), '<workflow>', 'exec')
            return True, None
        except SyntaxError as e:
            return False, f"Syntax error: {str(e)}"


__all__ = [
    "CodeExecutionError",
    "CodeExecutor",
    "SAFE_BUILTINS",
]
