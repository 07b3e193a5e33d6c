"""Data models for declared resources, assets, certificates, state and plans."""

from .asset import AssetRecord, UploadAction, UploadPlan
from .certificate import CertificateRequest, CertificateState, CertificateStatus, ValidationRecord
from .operation import (
    ApplyResult,
    NodeOutcome,
    OperationKind,
    OperationRecord,
    Plan,
    PlannedOperation,
)
from .resource import (
    REFERENCE_ATTRIBUTES,
    REPLACEMENT_ATTRIBUTES,
    REQUIRED_ATTRIBUTES,
    ReplacePolicy,
    ResourceKind,
    ResourceNode,
    attribute_hash,
)
from .state import DeposedInstance, StateEntry

__all__ = [
    "ApplyResult",
    "AssetRecord",
    "CertificateRequest",
    "CertificateState",
    "CertificateStatus",
    "DeposedInstance",
    "NodeOutcome",
    "OperationKind",
    "OperationRecord",
    "Plan",
    "PlannedOperation",
    "REFERENCE_ATTRIBUTES",
    "REPLACEMENT_ATTRIBUTES",
    "REQUIRED_ATTRIBUTES",
    "ReplacePolicy",
    "ResourceKind",
    "ResourceNode",
    "StateEntry",
    "UploadAction",
    "UploadPlan",
    "ValidationRecord",
    "attribute_hash",
]
