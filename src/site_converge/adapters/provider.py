"""Provider interface consumed by the convergence engine."""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Optional, Tuple

from ..models import CertificateStatus, ResourceKind

# Hosted zone that every CloudFront alias target lives in.
CLOUDFRONT_HOSTED_ZONE_ID = "Z2FDTNDATAQYW2"


@dataclass(slots=True)
class ProviderResult:
    """Remote identifier and provider-computed outputs of a resource."""

    remote_id: str
    outputs: Dict[str, Any] = field(default_factory=dict)


class ResourceProvider(ABC):
    """Abstract base class describing the provider contract.

    Implementations are idempotent by identifier and report failures as
    :class:`~site_converge.errors.TransientProviderError` or
    :class:`~site_converge.errors.PermanentProviderError`. Creating a DNS
    record is an upsert.
    """

    @abstractmethod
    def create(self, kind: ResourceKind, attributes: Mapping[str, Any]) -> ProviderResult:
        """Create a resource and return its identifier."""

    @abstractmethod
    def read(self, kind: ResourceKind, remote_id: str) -> Optional[ProviderResult]:
        """Return the current remote view of a resource, or ``None`` if it is gone."""

    @abstractmethod
    def update(
        self, kind: ResourceKind, remote_id: str, attributes: Mapping[str, Any]
    ) -> ProviderResult:
        """Update a resource in place."""

    @abstractmethod
    def delete(self, kind: ResourceKind, remote_id: str) -> None:
        """Delete a resource; deleting an absent resource succeeds."""

    @abstractmethod
    def certificate_status(self, remote_id: str) -> Tuple[CertificateStatus, Optional[str]]:
        """Return the issuance status of a certificate and a failure reason, if any."""
