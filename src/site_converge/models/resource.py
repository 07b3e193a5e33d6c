"""Resource models describing the declared infrastructure graph."""

from __future__ import annotations

import hashlib
import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Mapping, Optional


class ResourceKind(str, Enum):
    """Enumeration of the resource kinds the engine knows how to converge."""

    BUCKET = "bucket"
    BUCKET_POLICY = "bucket_policy"
    ASSET_OBJECT = "asset_object"
    DISTRIBUTION = "distribution"
    ACCESS_IDENTITY = "access_identity"
    CERTIFICATE = "certificate"
    VALIDATION_RECORD = "validation_record"
    ALIAS_RECORD = "alias_record"


class ReplacePolicy(str, Enum):
    """How a node is handled when a change forces a new remote instance."""

    IN_PLACE = "in_place"
    CREATE_BEFORE_DESTROY = "create_before_destroy"


# Attributes whose change cannot be applied to the existing remote instance.
REPLACEMENT_ATTRIBUTES: Dict[ResourceKind, FrozenSet[str]] = {
    ResourceKind.BUCKET: frozenset({"bucket_name", "region"}),
    ResourceKind.BUCKET_POLICY: frozenset({"bucket"}),
    ResourceKind.ASSET_OBJECT: frozenset({"bucket"}),
    ResourceKind.DISTRIBUTION: frozenset(),
    ResourceKind.ACCESS_IDENTITY: frozenset(),
    ResourceKind.CERTIFICATE: frozenset({"domain_name", "alternative_names"}),
    ResourceKind.VALIDATION_RECORD: frozenset({"name", "type", "zone_id"}),
    ResourceKind.ALIAS_RECORD: frozenset({"name", "type", "zone_id"}),
}

# Attributes naming another node; each one implies a dependency edge.
REFERENCE_ATTRIBUTES: Dict[ResourceKind, FrozenSet[str]] = {
    ResourceKind.BUCKET: frozenset(),
    ResourceKind.BUCKET_POLICY: frozenset({"bucket", "access_identity"}),
    ResourceKind.ASSET_OBJECT: frozenset({"bucket"}),
    ResourceKind.DISTRIBUTION: frozenset({"origin_bucket", "access_identity", "certificate"}),
    ResourceKind.ACCESS_IDENTITY: frozenset(),
    ResourceKind.CERTIFICATE: frozenset(),
    ResourceKind.VALIDATION_RECORD: frozenset(),
    ResourceKind.ALIAS_RECORD: frozenset({"target"}),
}

# Attributes a handler cannot converge without.
REQUIRED_ATTRIBUTES: Dict[ResourceKind, FrozenSet[str]] = {
    ResourceKind.BUCKET: frozenset({"bucket_name"}),
    ResourceKind.BUCKET_POLICY: frozenset({"bucket", "access_identity"}),
    ResourceKind.ASSET_OBJECT: frozenset({"bucket", "root"}),
    ResourceKind.DISTRIBUTION: frozenset({"origin_bucket", "access_identity"}),
    ResourceKind.ACCESS_IDENTITY: frozenset(),
    ResourceKind.CERTIFICATE: frozenset({"domain_name", "zone_id"}),
    ResourceKind.VALIDATION_RECORD: frozenset({"name", "value", "zone_id"}),
    ResourceKind.ALIAS_RECORD: frozenset({"name", "target", "zone_id"}),
}


def attribute_hash(attributes: Mapping[str, Any]) -> str:
    """Return a stable digest of an attribute map."""

    canonical = json.dumps(attributes, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


@dataclass(slots=True)
class ResourceNode:
    """A declared resource and the nodes it must wait for."""

    id: str
    kind: ResourceKind
    desired_attributes: Dict[str, Any] = field(default_factory=dict)
    depends_on: FrozenSet[str] = frozenset()
    replace_policy: ReplacePolicy = ReplacePolicy.IN_PLACE
    source: Optional[str] = None

    def __post_init__(self) -> None:
        self.kind = ResourceKind(self.kind)
        self.replace_policy = ReplacePolicy(self.replace_policy)
        self.depends_on = frozenset(self.depends_on)

    def attribute_hash(self) -> str:
        return attribute_hash(self.desired_attributes)

    def references(self) -> Dict[str, str]:
        """Return the reference attributes of this node mapped to the ids they name."""

        refs: Dict[str, str] = {}
        for name in REFERENCE_ATTRIBUTES[self.kind]:
            value = self.desired_attributes.get(name)
            if isinstance(value, str) and value:
                refs[name] = value
        return refs

    def missing_attributes(self) -> List[str]:
        return sorted(
            name for name in REQUIRED_ATTRIBUTES[self.kind] if self.desired_attributes.get(name) in (None, "")
        )

    def requires_replacement(self, previous_attributes: Mapping[str, Any] | None) -> bool:
        """Return ``True`` when a replacement attribute differs from ``previous_attributes``."""

        if previous_attributes is None:
            return False
        return any(
            _normalized(self.desired_attributes.get(name)) != _normalized(previous_attributes.get(name))
            for name in REPLACEMENT_ATTRIBUTES[self.kind]
        )

    def same_declaration(self, other: "ResourceNode") -> bool:
        return (
            self.kind == other.kind
            and self.replace_policy == other.replace_policy
            and self.depends_on == other.depends_on
            and self.attribute_hash() == other.attribute_hash()
        )


def _normalized(value: Any) -> Any:
    # Domain lists compare as sets.
    if isinstance(value, (list, tuple, set, frozenset)):
        return sorted(str(item) for item in value)
    return value

