"""Shared configuration, logging, LLM and persistence helpers"""

from .config import config
from .logger import get_logger

__all__ = [
    "config",
    "get_logger",
]
