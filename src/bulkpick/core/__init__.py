"""Pick coordination engine.

Pure rules, the workflow state machine and the run status manager, wired
together per operator session by `PickCoordinator`. Nothing in this package
performs I/O on its own; the remote service is injected as a `PickingBackend`.
"""

from bulkpick.core.coordinator import PickCoordinator
from bulkpick.core.errors import BackendError, ErrorKind, PickingError, PickValidationError, classify_error
from bulkpick.core.status_manager import RunStatusManager, StatusTrigger
from bulkpick.core.store import EngineState, Store
from bulkpick.core.workflow import WorkflowEvent, WorkflowState, WorkflowStateMachine

__all__ = [
    "BackendError",
    "EngineState",
    "ErrorKind",
    "PickCoordinator",
    "PickValidationError",
    "PickingError",
    "RunStatusManager",
    "StatusTrigger",
    "Store",
    "WorkflowEvent",
    "WorkflowState",
    "WorkflowStateMachine",
    "classify_error",
]
