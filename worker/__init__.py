"""
Taskiq worker package for the workflow runtime.

Provides broker configuration and background tasks: scheduled workflow
execution and on-demand runs of deployed workflows.
"""

__all__ = ["broker"]
