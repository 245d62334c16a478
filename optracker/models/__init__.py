from optracker.models.operation import (
    ErrorStatus,
    OperationFilter,
    OperationRecord,
    OperationState,
    Payload,
    TERMINAL_STATES,
    utcnow,
)

__all__ = [
    "ErrorStatus",
    "OperationFilter",
    "OperationRecord",
    "OperationState",
    "Payload",
    "TERMINAL_STATES",
    "utcnow",
]
