from pydantic import BaseModel, ConfigDict, Field, computed_field, field_validator, model_validator
from typing import Optional, Dict, Any, List
from enum import Enum
from datetime import datetime, timezone


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class OperationState(str, Enum):
    """Operation state enumeration"""
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self is not OperationState.RUNNING


TERMINAL_STATES = frozenset({
    OperationState.SUCCEEDED,
    OperationState.FAILED,
    OperationState.CANCELLED,
})


class Payload(BaseModel):
    """Opaque producer-defined payload with an optional type discriminator.

    The tracker never looks inside ``value``; decoding is up to the code that
    produced the operation.
    """
    model_config = ConfigDict(frozen=True)

    type_url: Optional[str] = None
    value: Any = None

    @classmethod
    def coerce(cls, obj: Any) -> Optional["Payload"]:
        """Wrap a plain JSON value, or pass an existing payload through."""
        if obj is None:
            return None
        if isinstance(obj, Payload):
            return obj
        if isinstance(obj, dict) and set(obj) == {"type_url", "value"}:
            return cls.model_validate(obj)
        return cls(value=obj)


class ErrorStatus(BaseModel):
    """Structured error recorded on a FAILED operation"""
    model_config = ConfigDict(frozen=True)

    code: int
    message: str = ""
    details: Optional[List[Payload]] = None

    @field_validator("details", mode="before")
    @classmethod
    def _wrap_details(cls, value):
        if value is None:
            return None
        return [Payload.coerce(item) for item in value]

    @classmethod
    def coerce(cls, obj: Any) -> "ErrorStatus":
        if isinstance(obj, ErrorStatus):
            return obj
        return cls.model_validate(obj)


class OperationFilter(BaseModel):
    """Criteria accepted by List"""
    state: Optional[OperationState] = None
    kind: Optional[str] = None
    done: Optional[bool] = None

    def matches(self, record: "OperationRecord") -> bool:
        if self.state is not None and record.state != self.state:
            return False
        if self.kind is not None and record.kind != self.kind:
            return False
        if self.done is not None and record.done != self.done:
            return False
        return True


class OperationRecord(BaseModel):
    """Operation record schema"""

    id: str
    kind: Optional[str] = None
    state: OperationState = OperationState.RUNNING
    metadata: Optional[Payload] = None
    result: Optional[Payload] = None
    error: Optional[ErrorStatus] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    completed_at: Optional[datetime] = None
    version: int = 1
    history: List[Dict[str, Any]] = Field(default_factory=list)

    @model_validator(mode="after")
    def _check_outcome(self):
        if self.state == OperationState.SUCCEEDED:
            if self.result is None or self.error is not None:
                raise ValueError("succeeded operations carry a result and no error")
        elif self.state == OperationState.FAILED:
            if self.error is None or self.result is not None:
                raise ValueError("failed operations carry an error and no result")
        elif self.result is not None or self.error is not None:
            raise ValueError(f"{self.state.value} operations carry neither result nor error")
        return self

    @computed_field
    @property
    def done(self) -> bool:
        return self.state in TERMINAL_STATES

    def sort_key(self):
        return (self.created_at, self.id)
