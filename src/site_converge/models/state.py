"""Persisted convergence history for a single logical resource."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional

from .resource import ResourceKind


@dataclass(slots=True)
class DeposedInstance:
    """A previous remote instance kept alive until its dependents moved off it."""

    remote_identifier: str
    outputs: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {"remote_identifier": self.remote_identifier, "outputs": dict(self.outputs)}


@dataclass(slots=True)
class StateEntry:
    """Last known remote identity and attribute hash of a resource."""

    resource_id: str
    kind: ResourceKind
    remote_identifier: str
    attribute_hash: str
    last_applied_at: str
    attributes: Dict[str, Any] = field(default_factory=dict)
    outputs: Dict[str, Any] = field(default_factory=dict)
    depends_on: List[str] = field(default_factory=list)
    deposed: List[DeposedInstance] = field(default_factory=list)

    def output(self, key: str, default: Optional[Any] = None) -> Any:
        return self.outputs.get(key, default)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "resource_id": self.resource_id,
            "kind": self.kind.value,
            "remote_identifier": self.remote_identifier,
            "attribute_hash": self.attribute_hash,
            "last_applied_at": self.last_applied_at,
            "attributes": dict(self.attributes),
            "outputs": dict(self.outputs),
            "depends_on": list(self.depends_on),
            "deposed": [instance.to_dict() for instance in self.deposed],
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "StateEntry":
        return cls(
            resource_id=str(payload["resource_id"]),
            kind=ResourceKind(payload["kind"]),
            remote_identifier=str(payload["remote_identifier"]),
            attribute_hash=str(payload.get("attribute_hash", "")),
            last_applied_at=str(payload.get("last_applied_at", "")),
            attributes=dict(payload.get("attributes") or {}),
            outputs=dict(payload.get("outputs") or {}),
            depends_on=[str(item) for item in payload.get("depends_on") or []],
            deposed=[
                DeposedInstance(
                    remote_identifier=str(item["remote_identifier"]),
                    outputs=dict(item.get("outputs") or {}),
                )
                for item in payload.get("deposed") or []
            ],
        )
