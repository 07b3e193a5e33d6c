"""Certificate provisioning and validation waiting."""

from .waiter import VALIDATION_RECORD_TTL, CertificateWaiter

__all__ = ["CertificateWaiter", "VALIDATION_RECORD_TTL"]
