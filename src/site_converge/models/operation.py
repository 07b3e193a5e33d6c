"""Plan and execution trace models produced by the executor."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, List, Optional

from .resource import ResourceKind, ReplacePolicy

if TYPE_CHECKING:  # pragma: no cover - imported for type checking only
    from ..errors import ConvergenceError
    from .resource import ResourceNode
    from .state import StateEntry


class OperationKind(str, Enum):
    """Planned action for a resource."""

    NOOP = "no-op"
    CREATE = "create"
    UPDATE = "update"
    REPLACE = "replace"
    DESTROY = "destroy"


class NodeOutcome(str, Enum):
    """Final outcome of a node in an apply or destroy pass."""

    SUCCEEDED = "succeeded"
    SKIPPED = "skipped"
    FAILED = "failed"


@dataclass(slots=True)
class PlannedOperation:
    """One node's planned action and why it was chosen."""

    resource_id: str
    kind: ResourceKind
    action: OperationKind
    reason: str = ""
    replace_policy: ReplacePolicy = ReplacePolicy.IN_PLACE
    fingerprint: str = ""
    node: Optional["ResourceNode"] = None
    previous: Optional["StateEntry"] = None

    @property
    def is_mutation(self) -> bool:
        return self.action is not OperationKind.NOOP


@dataclass(slots=True)
class Plan:
    """Ordered operations: forward operations first, then destroys."""

    operations: List[PlannedOperation] = field(default_factory=list)

    @property
    def forward(self) -> List[PlannedOperation]:
        return [op for op in self.operations if op.action is not OperationKind.DESTROY]

    @property
    def destroys(self) -> List[PlannedOperation]:
        return [op for op in self.operations if op.action is OperationKind.DESTROY]

    @property
    def changes(self) -> List[PlannedOperation]:
        return [op for op in self.operations if op.is_mutation]

    @property
    def is_empty(self) -> bool:
        return not self.changes

    def get(self, resource_id: str) -> Optional[PlannedOperation]:
        for operation in self.operations:
            if operation.resource_id == resource_id:
                return operation
        return None


@dataclass(slots=True)
class OperationRecord:
    """Trace entry for one node: what ran, when, and how it ended."""

    resource_id: str
    kind: ResourceKind
    action: OperationKind
    outcome: NodeOutcome
    started_at: Optional[float] = None
    finished_at: Optional[float] = None
    detail: str = ""


@dataclass(slots=True)
class ApplyResult:
    """Outcome of an apply or destroy pass."""

    plan: Plan
    records: List[OperationRecord] = field(default_factory=list)
    error: Optional["ConvergenceError"] = None

    @property
    def succeeded(self) -> bool:
        return self.error is None

    def record(self, resource_id: str) -> Optional[OperationRecord]:
        for record in self.records:
            if record.resource_id == resource_id:
                return record
        return None

    def outcomes(self) -> dict[str, NodeOutcome]:
        return {record.resource_id: record.outcome for record in self.records}
