"""
Taskiq task modules.

- schedules: due-schedule execution jobs.
- workflows: deployed workflow execution jobs.
"""

__all__ = ["schedules", "workflows"]
