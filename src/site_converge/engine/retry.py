"""Bounded exponential backoff around provider calls."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Iterator, Mapping, Optional, Tuple, TypeVar

from ..adapters.provider import ProviderResult, ResourceProvider
from ..errors import PermanentProviderError, TransientProviderError
from ..models import CertificateStatus, ResourceKind

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True, slots=True)
class RetryPolicy:
    max_attempts: int = 5
    base_delay: float = 1.0
    max_delay: float = 30.0
    multiplier: float = 2.0

    def delays(self) -> Iterator[float]:
        """Yield the wait before each retry (``max_attempts - 1`` values)."""

        for attempt in range(self.max_attempts - 1):
            yield min(self.base_delay * (self.multiplier**attempt), self.max_delay)


def call_with_retry(
    operation: Callable[[], T],
    policy: RetryPolicy,
    *,
    description: str,
    sleep: Callable[[float], Any] = time.sleep,
) -> T:
    """Run ``operation``, retrying transient failures.

    Once the attempt limit is reached the last transient error is escalated to
    :class:`PermanentProviderError`. Permanent errors are never retried.
    """

    delays = policy.delays()
    attempt = 0
    while True:
        attempt += 1
        try:
            return operation()
        except TransientProviderError as exc:
            delay = next(delays, None)
            if delay is None:
                raise PermanentProviderError(
                    f"{description} failed after {attempt} attempts: {exc}"
                ) from exc
            logger.warning(
                "%s failed (attempt %d/%d): %s; retrying in %.1fs",
                description,
                attempt,
                policy.max_attempts,
                exc,
                delay,
            )
            sleep(delay)


class RetryingProvider(ResourceProvider):
    """Provider decorator applying :func:`call_with_retry` to every call."""

    def __init__(
        self,
        provider: ResourceProvider,
        policy: RetryPolicy | None = None,
        *,
        sleep: Callable[[float], Any] = time.sleep,
    ) -> None:
        self.provider = provider
        self.policy = policy or RetryPolicy()
        self._sleep = sleep

    def _call(self, description: str, operation: Callable[[], T]) -> T:
        return call_with_retry(operation, self.policy, description=description, sleep=self._sleep)

    def create(self, kind: ResourceKind, attributes: Mapping[str, Any]) -> ProviderResult:
        return self._call(f"create {kind.value}", lambda: self.provider.create(kind, attributes))

    def read(self, kind: ResourceKind, remote_id: str) -> Optional[ProviderResult]:
        return self._call(f"read {kind.value} {remote_id}", lambda: self.provider.read(kind, remote_id))

    def update(
        self, kind: ResourceKind, remote_id: str, attributes: Mapping[str, Any]
    ) -> ProviderResult:
        return self._call(
            f"update {kind.value} {remote_id}",
            lambda: self.provider.update(kind, remote_id, attributes),
        )

    def delete(self, kind: ResourceKind, remote_id: str) -> None:
        self._call(f"delete {kind.value} {remote_id}", lambda: self.provider.delete(kind, remote_id))

    def certificate_status(self, remote_id: str) -> Tuple[CertificateStatus, Optional[str]]:
        return self._call(
            f"certificate status {remote_id}", lambda: self.provider.certificate_status(remote_id)
        )
