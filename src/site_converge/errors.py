"""Error taxonomy raised by the convergence engine."""

from __future__ import annotations

from typing import Sequence


class ConvergenceError(RuntimeError):
    """Base class for every error the engine raises on purpose."""


class DeclarationError(ConvergenceError):
    """Raised when resource declarations cannot be loaded or parsed."""


class ConfigError(ConvergenceError):
    """Raised when settings are missing or malformed."""


class CycleError(DeclarationError):
    """Raised when the declared dependencies do not form a DAG."""

    def __init__(self, involved_nodes: Sequence[str]) -> None:
        self.involved_nodes = list(involved_nodes)
        super().__init__(f"Dependency cycle between resources: {' -> '.join(self.involved_nodes)}")


class DuplicateIdError(DeclarationError):
    """Raised when one resource id is declared twice with differing content."""

    def __init__(self, resource_id: str, sources: Sequence[str | None] = ()) -> None:
        self.resource_id = resource_id
        self.sources = [source for source in sources if source]
        message = f"Resource '{resource_id}' is declared more than once with differing attributes"
        if self.sources:
            message += f" ({', '.join(self.sources)})"
        super().__init__(message)


class UnknownDependencyError(DeclarationError):
    """Raised when a resource depends on an id that is not declared."""

    def __init__(self, resource_id: str, missing: str) -> None:
        self.resource_id = resource_id
        self.missing = missing
        super().__init__(f"Resource '{resource_id}' depends on undeclared resource '{missing}'")


class ProviderError(ConvergenceError):
    """Base class for failures reported by a resource provider."""


class TransientProviderError(ProviderError):
    """Network or throttling failure that may succeed on retry."""


class PermanentProviderError(ProviderError):
    """Failure that will not go away by retrying."""


class ValidationTimeoutError(ConvergenceError):
    """Raised when a certificate is not issued within the configured wait."""

    def __init__(self, resource_id: str, waited: float) -> None:
        self.resource_id = resource_id
        self.waited = waited
        super().__init__(
            f"Certificate '{resource_id}' was not issued after waiting {waited:.0f}s; "
            "the request and its validation records were kept for the next apply"
        )


class CertificateValidationError(ConvergenceError):
    """Raised when the certificate authority rejects a request."""

    def __init__(self, resource_id: str, reason: str | None) -> None:
        self.resource_id = resource_id
        self.reason = reason
        super().__init__(f"Certificate '{resource_id}' failed validation: {reason or 'unknown reason'}")


class BindingError(ConvergenceError):
    """Raised when the serving path cannot be wired together."""


class ConcurrentApplyError(ConvergenceError):
    """Raised when another apply already holds the state lock."""


class StateStoreError(ConvergenceError):
    """Raised when the state file cannot be read or written."""


class ApplyCancelledError(ConvergenceError):
    """Raised when an operator cancels an apply while it is waiting."""


__all__ = [
    "ApplyCancelledError",
    "BindingError",
    "CertificateValidationError",
    "ConcurrentApplyError",
    "ConfigError",
    "ConvergenceError",
    "CycleError",
    "DeclarationError",
    "DuplicateIdError",
    "PermanentProviderError",
    "ProviderError",
    "StateStoreError",
    "TransientProviderError",
    "UnknownDependencyError",
    "ValidationTimeoutError",
]
