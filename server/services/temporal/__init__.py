"""Temporal workflow orchestration service.

Architecture:
- GraphRunWorkflow runs the graph runner as a durable workflow
- Each workflow node executes as an independent Temporal activity
- Activities checkpoint completed steps through heartbeat details, so a
  retried activity never repeats a completed step

When TEMPORAL_ENABLED=true:
- Workflow runs and scheduled fires go through Temporal

When TEMPORAL_ENABLED=false (default):
- Runs execute in-process with a LocalStepHandle
"""

from .executor import TemporalExecutor
from .client import TemporalClientWrapper

__all__ = ["TemporalExecutor", "TemporalClientWrapper"]
