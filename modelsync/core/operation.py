from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator
from ulid import ULID

from modelsync.core.config import app_config
from modelsync.core.types import Entity, OperationStatus, OperationType


def generate_operation_id() -> str:
    """Time-ordered unique operation id."""
    return f"op_{ULID()}"


def as_instance_list(value: Any) -> List[Entity]:
    """Coerce a single entity to a one element list."""
    if value is None:
        raise ValueError("Operation data must include 'instances'.")
    if isinstance(value, (list, tuple)):
        return list(value)
    return [value]


class OperationArgs(BaseModel):
    """Extra arguments carried by upsert operations."""

    lookup: Optional[Dict[str, Any]] = None
    defaults: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("defaults", mode="before")
    @classmethod
    def _defaults_or_empty(cls, value):
        return value if value is not None else {}


class Operation(BaseModel):
    """
    A single pending mutation, overlaid on ground truth by the stores.

    Operations are value-like: the stores only ever change them through
    confirm() and reject(), and a transition never moves an operation's
    position in a store's log.

    Attributes:
        operation_id: Unique, time-ordered identifier
        type: One of OperationType's values. Kept as a plain string so that
            persisted logs with unknown types still load (they are skipped
            when rendering).
        status: inflight, confirmed or rejected
        instances: Entity payloads, each carrying the model's primary key
        args: lookup/defaults for get_or_create and update_or_create
        timestamp: Epoch milliseconds of the last status change
    """

    operation_id: str = Field(default_factory=generate_operation_id)
    type: str = Field(min_length=1)
    status: OperationStatus = OperationStatus.INFLIGHT
    instances: List[Any]
    args: Optional[OperationArgs] = None
    timestamp: int = Field(default_factory=app_config.now)

    @field_validator("type", mode="before")
    @classmethod
    def _type_value(cls, value):
        if isinstance(value, OperationType):
            return value.value
        return value

    @field_validator("instances", mode="before")
    @classmethod
    def _coerce_instances(cls, value):
        return as_instance_list(value)

    @field_validator("operation_id", mode="before")
    @classmethod
    def _operation_id_or_generated(cls, value):
        return value or generate_operation_id()

    @property
    def is_rejected(self) -> bool:
        return self.status == OperationStatus.REJECTED

    def is_relevant(self, cutoff: int) -> bool:
        """Relevant operations take part in rendering: not rejected and not stale."""
        return not self.is_rejected and self.timestamp > cutoff

    def instance_pks(self, pk_field: str) -> List[Any]:
        return [
            instance[pk_field]
            for instance in self.instances
            if isinstance(instance, dict) and pk_field in instance
        ]

    def targets(self, pk_field: str, pk: Any) -> bool:
        return any(
            isinstance(instance, dict) and instance.get(pk_field, object()) == pk
            for instance in self.instances
        )

    def _touch(self) -> None:
        self.timestamp = max(self.timestamp, app_config.now())

    def confirm(self, instances: Optional[Any] = None) -> "Operation":
        """Mark confirmed, replacing instances with the server's values if given."""
        new_instances = (
            as_instance_list(instances) if instances is not None else self.instances
        )
        if self.status == OperationStatus.CONFIRMED and new_instances == self.instances:
            return self
        self.status = OperationStatus.CONFIRMED
        self.instances = new_instances
        self._touch()
        return self

    def reject(self) -> "Operation":
        if self.status == OperationStatus.REJECTED:
            return self
        self.status = OperationStatus.REJECTED
        self._touch()
        return self

    def with_instances(self, instances: List[Entity]) -> "Operation":
        """A copy of this operation restricted to the given instances."""
        return self.model_copy(update={"instances": instances})

    def to_dict(self) -> Dict[str, Any]:
        return self.model_dump(mode="json")

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Operation":
        return cls.model_validate(data)
