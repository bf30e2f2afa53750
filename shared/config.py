"""
Type-safe configuration for the workflow runtime using Pydantic Settings.

This module provides a centralized, type-safe configuration system
that loads from environment variables and .env files.

Usage:
    from shared.config import config

    if config.schedule_execution_strategy == "queue":
        ...
"""
from typing import Literal, Optional
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class WorkflowConfig(BaseSettings):
    """
    Central configuration for the execution core and the schedule dispatcher.

    All configuration is loaded from environment variables or .env file.
    Provides type safety and validation at startup.
    """
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        case_sensitive=False,
    )

    # ============================================================================
    # Infrastructure
    # ============================================================================

    DATABASE_URL: Optional[str] = Field(
        default=None,
        description="Database connection string (postgres://... or sqlite://...) for Tortoise ORM"
    )
    redis_url: Optional[str] = Field(default=None, description="Redis URL for the Taskiq broker")
    db_generate_schemas: bool = Field(default=False, description="Generate schemas at startup instead of relying on migrations")

    # ============================================================================
    # LLM Providers
    # ============================================================================

    openai_api_key: Optional[str] = Field(default=None, description="OpenAI API key for agent/evaluator blocks")
    anthropic_api_key: Optional[str] = Field(default=None, description="Anthropic API key for Claude models")
    default_llm_model: str = Field(default="gpt-5-mini", description="Default LLM model")

    # ============================================================================
    # Execution Engine
    # ============================================================================

    block_timeout_seconds: float = Field(default=300.0, gt=0, description="Per-block handler timeout; timeout counts as a handler failure")
    workflow_timeout_seconds: Optional[float] = Field(default=None, description="Run-level timeout; None disables it")
    max_workflow_depth: int = Field(default=10, ge=1, description="Maximum nesting depth for workflow blocks")
    parallel_max_concurrency: Optional[int] = Field(
        default=None,
        description="Upper bound applied to parallel blocks that do not declare max_concurrency"
    )
    code_execution_timeout_seconds: float = Field(default=30.0, gt=0, description="Timeout for function/condition code")

    # ============================================================================
    # Schedule Dispatcher
    # ============================================================================

    schedule_execution_strategy: Literal["queue", "direct"] = Field(
        default="queue",
        description="'queue' hands due schedules to the Taskiq broker, 'direct' runs them in-process"
    )
    schedule_dispatcher_enabled: bool = Field(default=False, description="Start the periodic dispatcher in the worker")
    schedule_poll_interval_seconds: int = Field(default=60, ge=1, description="Seconds between dispatcher ticks")
    schedule_max_batch_size: Optional[int] = Field(default=None, description="Maximum due schedules dispatched per tick")
    schedule_default_interval_seconds: int = Field(
        default=3600,
        ge=1,
        description="Next-run interval for schedules without a cron expression"
    )
    schedule_max_consecutive_failures: int = Field(default=10, ge=1, description="Failures before a schedule is disabled")
    schedule_worker_concurrency: int = Field(default=4, ge=1, description="Workers for the direct execution strategy")
    schedule_worker_queue_size: int = Field(
        default=100,
        ge=1,
        description="Jobs the direct strategy buffers before submit waits for a free slot"
    )

    @field_validator("parallel_max_concurrency")
    @classmethod
    def _validate_parallel_cap(cls, v: Optional[int]) -> Optional[int]:
        if v is not None and v < 1:
            raise ValueError("parallel_max_concurrency must be >= 1")
        return v

    # ============================================================================
    # Computed Properties
    # ============================================================================

    @property
    def uses_task_queue(self) -> bool:
        """Check if due schedules are handed to the durable task queue."""
        return self.schedule_execution_strategy == "queue"

# ============================================================================
# Global Config Instance
# ============================================================================

config = WorkflowConfig()
