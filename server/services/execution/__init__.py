"""Execution engine package.

Building blocks shared by the node handlers and the graph runner:
- context: execution context helpers and reserved signal keys
- errors: exception hierarchy and the error classifier
- steps: durable step handles and the step journal
- status: node status publishing

conditions.py (condition operators), graph.py and runner.py build on the
template and expression engines and the handler registry, so they are
imported by module path rather than re-exported here.
"""

from .errors import (
    StructuredError,
    WorkflowError,
    ConfigurationError,
    NodeExecutionError,
    ExecutorNotFoundError,
    WorkflowCycleError,
    ScheduleValidationError,
    ScheduleNotFoundError,
    classify,
)
from .context import (
    MISSING,
    freeze,
    get_path,
    user_view,
    with_output,
    require_variable_name,
)
from .steps import (
    StepHandle,
    StepJournal,
    LocalStepHandle,
)
from .status import (
    node_status,
    status_channel,
)

__all__ = [
    # Errors
    "StructuredError",
    "WorkflowError",
    "ConfigurationError",
    "NodeExecutionError",
    "ExecutorNotFoundError",
    "WorkflowCycleError",
    "ScheduleValidationError",
    "ScheduleNotFoundError",
    "classify",
    # Context
    "MISSING",
    "freeze",
    "get_path",
    "user_view",
    "with_output",
    "require_variable_name",
    # Steps
    "StepHandle",
    "StepJournal",
    "LocalStepHandle",
    # Status
    "node_status",
    "status_channel",
]
