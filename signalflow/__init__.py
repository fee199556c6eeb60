"""signalflow: trigger-driven workflow orchestration over JSON-RPC connectors."""

from .auth import AccessClaims, AccessTokenSigner
from .config import SignalflowConfig, load_config
from .contracts import ConnectorSchema, OperationSchema, WorkflowSchema
from .manager import WorkflowManager
from .persistence import get_store
from .runtime import RuntimeContext, RuntimeWorkflow, WorkflowStatus
from .schema import ConnectorSchemaResolver
from .tracking import Tracker

__version__ = "0.1.0"
__all__ = [
    "AccessClaims",
    "AccessTokenSigner",
    "ConnectorSchema",
    "ConnectorSchemaResolver",
    "OperationSchema",
    "RuntimeContext",
    "RuntimeWorkflow",
    "SignalflowConfig",
    "Tracker",
    "WorkflowManager",
    "WorkflowSchema",
    "WorkflowStatus",
    "get_store",
    "load_config",
]
