"""Pydantic models for workflow graphs.

Accepts both the canonical shape (``connections`` with ``from_output``) and
React Flow exports (``edges`` with ``sourceHandle``/``targetHandle``).
"""

import uuid
from typing import Any, Dict, List, Optional

from pydantic import AliasChoices, BaseModel, Field, field_validator

from constants import DEFAULT_OUTPUT


class WorkflowNode(BaseModel):
    """A node in a workflow graph; ``data`` holds its parameters."""
    model_config = {"extra": "allow", "populate_by_name": True}

    id: str
    type: str
    data: Dict[str, Any] = Field(default_factory=dict,
                                 validation_alias=AliasChoices("data", "parameters"))


class Connection(BaseModel):
    """A directed edge between two nodes."""
    model_config = {"extra": "allow", "populate_by_name": True}

    source: str
    target: str
    from_output: str = Field(default=DEFAULT_OUTPUT,
                             validation_alias=AliasChoices("from_output", "sourceHandle", "fromOutput"))
    to_input: str = Field(default=DEFAULT_OUTPUT,
                          validation_alias=AliasChoices("to_input", "targetHandle", "toInput"))

    @field_validator("from_output", "to_input", mode="before")
    @classmethod
    def _default_handle(cls, v):
        # React Flow writes null for the default handle
        return v or DEFAULT_OUTPUT


class WorkflowDefinition(BaseModel):
    """A workflow graph as registered or submitted for execution."""
    model_config = {"extra": "allow", "populate_by_name": True}

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    name: Optional[str] = None
    nodes: List[WorkflowNode] = Field(default_factory=list)
    connections: List[Connection] = Field(default_factory=list,
                                          validation_alias=AliasChoices("connections", "edges"))

    def node_map(self) -> Dict[str, WorkflowNode]:
        return {node.id: node for node in self.nodes}


class ExecuteWorkflowRequest(BaseModel):
    """Body of the execute endpoints."""
    model_config = {"populate_by_name": True}

    workflow: Optional[WorkflowDefinition] = None
    initial_data: Dict[str, Any] = Field(default_factory=dict,
                                         validation_alias=AliasChoices("initial_data", "initialData"))
    caller_id: str = Field(default="default", validation_alias=AliasChoices("caller_id", "callerId"))
