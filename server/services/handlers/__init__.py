"""Node handlers package.

This package contains all node execution handlers organized by category:
- triggers.py: Manual Trigger, Schedule Trigger
- control.py: Filter/Conditional, Switch, Merge, Split, Loop, Set
- flow.py: Delay/Wait, Error Trigger
- http.py: HTTP Request
"""

# Trigger handlers
from .triggers import (
    handle_manual_trigger,
    handle_schedule_trigger,
)

# Control flow handlers
from .control import (
    handle_filter,
    handle_switch,
    handle_merge,
    handle_split,
    handle_loop,
    handle_set,
)

# Flow handlers
from .flow import (
    handle_delay_wait,
    handle_error_trigger,
)

# HTTP handlers
from .http import (
    handle_http_request,
)

__all__ = [
    # Triggers
    'handle_manual_trigger',
    'handle_schedule_trigger',
    # Control flow
    'handle_filter',
    'handle_switch',
    'handle_merge',
    'handle_split',
    'handle_loop',
    'handle_set',
    # Flow
    'handle_delay_wait',
    'handle_error_trigger',
    # HTTP
    'handle_http_request',
]
