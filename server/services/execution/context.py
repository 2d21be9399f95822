"""Execution context model.

The context is the ordered key/value state threaded through a run. Nodes never
mutate the snapshot they are handed; every helper here returns a new dict.

Keys starting with ``__`` are reserved for engine signalling (route results,
loop frames, the error carrier) and can never be chosen as user variable names.
"""

import re
from types import MappingProxyType
from typing import Any, Dict, Iterable, Mapping, Optional

from services.execution.errors import ConfigurationError

RESERVED_PREFIX = "__"

FILTER_RESULT_KEY = "__filterResult"
SWITCH_OUTPUT_KEY = "__switchOutput"
SWITCH_BRANCH_KEY = "__switchBranch"
SPLIT_BATCHES_KEY = "__splitBatches"
SPLIT_BATCH_COUNT_KEY = "__splitBatchCount"
LOOP_DATA_KEY = "__loopData"
ERROR_KEY = "__error"
LAST_ERROR_KEY = "__lastError"
ERROR_HANDLED_KEY = "__errorHandled"

# Signals consumed by the graph router once it has picked the next route
ROUTING_KEYS = (FILTER_RESULT_KEY, SWITCH_OUTPUT_KEY, SWITCH_BRANCH_KEY)

VARIABLE_NAME_PATTERN = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")

_BRACKET_SEGMENT = re.compile(r"""\[\s*(?:"([^"]*)"|'([^']*)'|(\d+))\s*\]""")


class _Missing:
    """Sentinel for a path that does not resolve (distinct from a stored None)."""

    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __bool__(self):
        return False

    def __repr__(self):
        return "MISSING"


MISSING = _Missing()


def is_reserved_key(key: str) -> bool:
    return key.startswith(RESERVED_PREFIX)


def is_valid_variable_name(name: Any) -> bool:
    """True when ``name`` is a legal user variable name."""
    return (
        isinstance(name, str)
        and bool(VARIABLE_NAME_PATTERN.match(name))
        and not is_reserved_key(name)
    )


def freeze(context: Mapping[str, Any]) -> Mapping[str, Any]:
    """Read-only view handed to node executors."""
    return MappingProxyType(dict(context))


def with_output(context: Mapping[str, Any], name: str, value: Any,
                replace: bool = False, **signals: Any) -> Dict[str, Any]:
    """Return a new context carrying ``name = value``.

    With ``replace`` the prior user keys are dropped and only the output (plus
    any reserved signals passed as keyword arguments) remains.
    """
    base: Dict[str, Any] = {} if replace else dict(context)
    base[name] = value
    base.update(signals)
    return base


def without_keys(context: Mapping[str, Any], keys: Iterable[str]) -> Dict[str, Any]:
    drop = set(keys)
    return {k: v for k, v in context.items() if k not in drop}


def user_view(context: Mapping[str, Any]) -> Dict[str, Any]:
    """Copy of the context without reserved engine keys."""
    return {k: v for k, v in context.items() if not is_reserved_key(k)}


def split_path(path: str) -> list:
    """Split ``a.b[0]["c d"]`` into ``["a", "b", "0", "c d"]``."""
    parts = []
    for chunk in _BRACKET_SEGMENT.sub(lambda m: "." + _bracket_key(m) + ".", path).split("."):
        chunk = chunk.strip()
        if chunk:
            parts.append(chunk)
    return parts


def _bracket_key(match: "re.Match") -> str:
    for group in match.groups():
        if group is not None:
            # Keys containing dots cannot round-trip through split, escape them
            return group.replace(".", "\x00")
    return ""


def get_path(data: Any, path: str, default: Any = MISSING) -> Any:
    """Resolve a dot/bracket path against nested dicts and lists.

    Returns ``default`` (MISSING unless given) when any segment fails.
    """
    if not path:
        return default

    current = data
    for raw in split_path(path):
        part = raw.replace("\x00", ".")
        if isinstance(current, Mapping):
            if part not in current:
                return default
            current = current[part]
        elif isinstance(current, (list, tuple)):
            try:
                index = int(part)
            except ValueError:
                return default
            if index < 0 or index >= len(current):
                return default
            current = current[index]
        else:
            return default
    return current


def first_user_value(context: Mapping[str, Any]) -> Optional[Any]:
    for key, value in context.items():
        if not is_reserved_key(key):
            return value
    return None


def require_variable_name(parameters: Mapping[str, Any], default: Optional[str] = None,
                          key: str = "variableName") -> str:
    """Read and validate the output variable name of a node.

    Without a ``default`` the name is required and a missing value raises
    VARIABLE_NAME_MISSING.
    """
    name = parameters.get(key)
    if isinstance(name, str):
        name = name.strip()
    if not name:
        if default is None:
            raise ConfigurationError("Variable name is missing", error_code="VARIABLE_NAME_MISSING")
        name = default
    if not is_valid_variable_name(name):
        raise ConfigurationError(
            f"Invalid variable name: {name!r}",
            error_code="INVALID_VARIABLE_NAME",
            guidance=("Variable names must start with a letter or underscore, contain only letters, "
                      "digits and underscores, and must not start with '__'."),
        )
    return name
