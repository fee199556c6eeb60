"""Core data contracts for connectors and workflows."""

from __future__ import annotations

from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class WireModel(BaseModel):
    """Base model serialized with camelCase keys on the wire."""

    model_config = ConfigDict(
        alias_generator=to_camel, populate_by_name=True, extra="allow"
    )


class FieldSchema(WireModel):
    """Declaration of one input field of a trigger or action."""

    key: str
    type: Literal["string", "number", "boolean"] = "string"
    required: bool = False
    default: Any = None


class RemoteEndpoint(WireModel):
    url: str


class _OperationBase(WireModel):
    input_fields: List[FieldSchema] = Field(default_factory=list)
    requires_user_token: bool = False


class PollingOperation(_OperationBase):
    type: Literal["polling"] = "polling"
    operation: RemoteEndpoint


class ApiOperation(_OperationBase):
    type: Literal["api"] = "api"
    operation: RemoteEndpoint


class BlockchainEventOperation(_OperationBase):
    type: Literal["blockchain:event"] = "blockchain:event"
    signature: str


class BlockchainCallOperation(_OperationBase):
    type: Literal["blockchain:call"] = "blockchain:call"
    signature: str


class HookOperation(_OperationBase):
    type: Literal["hook"] = "hook"


Operation = Annotated[
    Union[
        PollingOperation,
        ApiOperation,
        BlockchainEventOperation,
        BlockchainCallOperation,
        HookOperation,
    ],
    Field(discriminator="type"),
]


class TriggerDefinition(WireModel):
    key: str
    name: Optional[str] = None
    operation: Operation


class ActionDefinition(WireModel):
    key: str
    name: Optional[str] = None
    operation: Operation


class ConnectorSchema(WireModel):
    """Description of the triggers and actions a connector exposes."""

    key: str
    name: Optional[str] = None
    version: Optional[str] = None
    triggers: List[TriggerDefinition] = Field(default_factory=list)
    actions: List[ActionDefinition] = Field(default_factory=list)
    authentication: Optional[Dict[str, Any]] = None

    def find_trigger(self, key: str) -> Optional[TriggerDefinition]:
        return next((t for t in self.triggers if t.key == key), None)

    def find_action(self, key: str) -> Optional[ActionDefinition]:
        return next((a for a in self.actions if a.key == key), None)


class OperationSchema(WireModel):
    """A trigger or action step of a workflow, bound to a connector operation."""

    connector: str
    operation: str
    input: Dict[str, Any] = Field(default_factory=dict)
    credentials: Any = None
    authentication: Optional[str] = None


class WorkflowSchema(WireModel):
    """Immutable snapshot of a workflow definition."""

    trigger: OperationSchema
    actions: List[OperationSchema] = Field(default_factory=list)
    state: Literal["on", "off"] = "on"
    title: Optional[str] = None
    source: Optional[str] = None
    creator: Optional[str] = None
    signature: Optional[str] = None

    @property
    def enabled(self) -> bool:
        return self.state != "off"


class ConnectorOutput(WireModel):
    """Payload pushed by a trigger connector through ``notifySignal``."""

    key: Optional[str] = None
    session_id: Optional[str] = None
    payload: Any = None
