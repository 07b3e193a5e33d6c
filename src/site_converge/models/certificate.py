"""Certificate request models and the validation state machine."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Mapping, Optional, Sequence


class CertificateState(str, Enum):
    """Lifecycle of a certificate request as tracked by the engine."""

    REQUESTED = "REQUESTED"
    PENDING_VALIDATION = "PENDING_VALIDATION"
    ISSUED = "ISSUED"
    FAILED = "FAILED"


class CertificateStatus(str, Enum):
    """Status values reported by the provider's certificate status query."""

    PENDING = "pending"
    ISSUED = "issued"
    FAILED = "failed"


_TRANSITIONS = {
    CertificateState.REQUESTED: {CertificateState.PENDING_VALIDATION, CertificateState.FAILED},
    CertificateState.PENDING_VALIDATION: {CertificateState.ISSUED, CertificateState.FAILED},
    CertificateState.ISSUED: set(),
    CertificateState.FAILED: set(),
}


@dataclass(frozen=True, slots=True)
class ValidationRecord:
    """DNS record proving control of ``domain`` to the certificate authority."""

    domain: str
    record_name: str
    record_value: str
    record_type: str = "CNAME"

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "ValidationRecord":
        return cls(
            domain=str(payload.get("domain", "")),
            record_name=str(payload["record_name"]),
            record_value=str(payload["record_value"]),
            record_type=str(payload.get("record_type") or "CNAME"),
        )

    def to_dict(self) -> Dict[str, str]:
        return {
            "domain": self.domain,
            "record_name": self.record_name,
            "record_value": self.record_value,
            "record_type": self.record_type,
        }


@dataclass(slots=True)
class CertificateRequest:
    """A certificate request moving through REQUESTED -> PENDING_VALIDATION -> ISSUED."""

    id: str
    primary_domain: str
    alternative_domains: FrozenSet[str] = frozenset()
    state: CertificateState = CertificateState.REQUESTED
    validation_records: List[ValidationRecord] = field(default_factory=list)
    certificate_arn: Optional[str] = None
    issued_arn: Optional[str] = None
    validation_record_ids: List[str] = field(default_factory=list)
    failure_reason: Optional[str] = None
    timed_out: bool = False

    @property
    def domains(self) -> List[str]:
        return [self.primary_domain, *sorted(self.alternative_domains - {self.primary_domain})]

    @property
    def is_terminal(self) -> bool:
        return self.state in (CertificateState.ISSUED, CertificateState.FAILED)

    def transition(self, state: CertificateState) -> None:
        if state not in _TRANSITIONS[self.state]:
            raise ValueError(f"Illegal certificate transition {self.state.value} -> {state.value}")
        self.state = state
        if state is CertificateState.ISSUED:
            self.issued_arn = self.certificate_arn

    def matches(self, domains: Sequence[str]) -> bool:
        return bool(domains) and domains[0] == self.primary_domain and set(domains[1:]) == set(
            self.alternative_domains
        )

    # Checkpoint serialization ------------------------------------------------
    def to_checkpoint(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "primary_domain": self.primary_domain,
            "alternative_domains": sorted(self.alternative_domains),
            "state": self.state.value,
            "certificate_arn": self.certificate_arn,
            "validation_records": [record.to_dict() for record in self.validation_records],
            "validation_record_ids": list(self.validation_record_ids),
        }

    @classmethod
    def from_checkpoint(cls, payload: Mapping[str, Any]) -> "CertificateRequest":
        return cls(
            id=str(payload["id"]),
            primary_domain=str(payload["primary_domain"]),
            alternative_domains=frozenset(payload.get("alternative_domains") or ()),
            state=CertificateState(payload.get("state", CertificateState.REQUESTED.value)),
            validation_records=[
                ValidationRecord.from_dict(item) for item in payload.get("validation_records") or []
            ],
            certificate_arn=payload.get("certificate_arn"),
            validation_record_ids=list(payload.get("validation_record_ids") or []),
        )
