"""
Simple logging module for the workflow runtime.

All services log to console (stdout) with colored, structured output.

Usage:
    from shared.logger import get_logger

    logger = get_logger(__name__)  # Use module name
    # or
    logger = get_logger('my_component')  # Use custom name

    logger.info("Message here")

Code that runs on behalf of a single workflow run receives a ``RunLogger``
through its execution context instead of a module logger, so every record
is tagged with the run it belongs to.
"""

import logging
import sys
from typing import Any, MutableMapping, Optional, Tuple

# Global cache of loggers
_loggers = {}


class ColoredFormatter(logging.Formatter):
    """Formatter that adds colors to console output"""

    COLORS = {
        'DEBUG': '\033[36m',     # Cyan
        'INFO': '\033[32m',      # Green
        'WARNING': '\033[33m',   # Yellow
        'ERROR': '\033[31m',     # Red
        'CRITICAL': '\033[35m',  # Magenta
        'RESET': '\033[0m'       # Reset
    }

    def format(self, record):
        # Work on a copy so other handlers keep the plain level name
        record = logging.makeLogRecord(record.__dict__)
        levelname = record.levelname
        if levelname in self.COLORS:
            record.levelname = f"{self.COLORS[levelname]}{levelname}{self.COLORS['RESET']}"

        return super().format(record)


def get_logger(name: str, level: int = logging.INFO) -> logging.Logger:
    """
    Get a logger that outputs colored, structured logs to console.

    Args:
        name: Logger name (typically __name__ or component name)
        level: Logging level (default: INFO)

    Returns:
        Configured logger instance
    """
    # Return cached logger if it exists
    if name in _loggers:
        return _loggers[name]

    logger = logging.getLogger(name)
    logger.setLevel(level)
    logger.propagate = False

    # Clear any existing handlers
    logger.handlers.clear()

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(level)

    formatter = ColoredFormatter(
        fmt='%(asctime)s | %(name)s | %(levelname)s | %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )
    console_handler.setFormatter(formatter)

    logger.addHandler(console_handler)

    _loggers[name] = logger
    return logger


class RunLogger(logging.LoggerAdapter):
    """
    Logger adapter bound to one workflow run.

    Adds ``run_id`` / ``workflow_id`` (and the block identity when bound to a
    block) to the ``extra`` of every record and prefixes the message so the
    console output stays readable.
    """

    def __init__(
        self,
        logger: logging.Logger,
        *,
        run_id: str,
        workflow_id: Optional[str] = None,
        block_id: Optional[str] = None,
    ) -> None:
        super().__init__(logger, {"run_id": run_id, "workflow_id": workflow_id, "block_id": block_id})

    def bind_block(self, block_id: str) -> "RunLogger":
        return RunLogger(
            self.logger,
            run_id=self.extra["run_id"],
            workflow_id=self.extra["workflow_id"],
            block_id=block_id,
        )

    def process(self, msg: Any, kwargs: MutableMapping[str, Any]) -> Tuple[Any, MutableMapping[str, Any]]:
        extra = dict(self.extra)
        extra.update(kwargs.get("extra") or {})
        kwargs["extra"] = extra
        prefix = f"[run={self.extra['run_id']}"
        if self.extra.get("block_id"):
            prefix += f" block={self.extra['block_id']}"
        return f"{prefix}] {msg}", kwargs


def get_run_logger(run_id: str, workflow_id: Optional[str] = None) -> RunLogger:
    """Return a run-scoped logger adapter on top of the engine logger."""
    return RunLogger(get_logger("workflow_core.run"), run_id=run_id, workflow_id=workflow_id)
