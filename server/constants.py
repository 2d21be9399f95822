"""Centralized constants for node types and categories.

Single source of truth for node type strings shared by the registry,
the graph runner and the trigger handling.
"""

from typing import FrozenSet

# =============================================================================
# TRIGGER NODE TYPES
# =============================================================================

MANUAL_TRIGGER = 'manualTrigger'
SCHEDULE_TRIGGER = 'scheduleTrigger'

TRIGGER_TYPES: FrozenSet[str] = frozenset([
    MANUAL_TRIGGER,
    SCHEDULE_TRIGGER,
])

# Initial-data carriers that name the trigger node which started a run
TRIGGER_CARRIERS: dict = {
    'manualTrigger': MANUAL_TRIGGER,
    'scheduleTrigger': SCHEDULE_TRIGGER,
}

# =============================================================================
# CONTROL-FLOW NODE TYPES
# =============================================================================

FILTER = 'filter'
CONDITIONAL = 'conditional'
SWITCH = 'switch'
MERGE = 'merge'
SPLIT = 'split'
LOOP = 'loop'
SET = 'set'

FILTER_TYPES: FrozenSet[str] = frozenset([FILTER, CONDITIONAL])

CONTROL_FLOW_TYPES: FrozenSet[str] = frozenset([
    FILTER,
    CONDITIONAL,
    SWITCH,
    MERGE,
    SPLIT,
    LOOP,
    SET,
])

# =============================================================================
# FLOW / UTILITY NODE TYPES
# =============================================================================

DELAY_WAIT = 'delayWait'
ERROR_TRIGGER = 'errorTrigger'
HTTP_REQUEST = 'httpRequest'

FLOW_TYPES: FrozenSet[str] = frozenset([DELAY_WAIT, ERROR_TRIGGER])

INTEGRATION_TYPES: FrozenSet[str] = frozenset([HTTP_REQUEST])

# =============================================================================
# OUTPUT HANDLES
# =============================================================================

DEFAULT_OUTPUT = 'main'
TRUE_OUTPUTS: FrozenSet[str] = frozenset(['source-true', 'true'])
FALSE_OUTPUTS: FrozenSet[str] = frozenset(['source-false', 'false'])
LOOP_BODY_OUTPUT = 'loop'

# =============================================================================
# SCHEDULES
# =============================================================================

SCHEDULE_TYPES: FrozenSet[str] = frozenset([
    'INTERVAL',
    'DAILY',
    'WEEKLY',
    'MONTHLY',
    'CRON',
])


def is_trigger_node(node_type: str) -> bool:
    """Check if node type is a workflow trigger."""
    return node_type in TRIGGER_TYPES


def switch_output_handles(index: int) -> FrozenSet[str]:
    """Handle names that select switch output ``index``."""
    return frozenset([f'output-{index}', f'output_{index}'])
