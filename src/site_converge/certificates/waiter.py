"""Certificate request, DNS validation publishing and issuance polling."""

from __future__ import annotations

import logging
import threading
import time
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from ..adapters.provider import ResourceProvider
from ..errors import ApplyCancelledError, PermanentProviderError
from ..models import (
    CertificateRequest,
    CertificateState,
    CertificateStatus,
    ResourceKind,
    ValidationRecord,
)

logger = logging.getLogger(__name__)

VALIDATION_RECORD_TTL = 300


class CertificateWaiter:
    """Drive a certificate from request to a terminal state.

    ``on_checkpoint`` receives the request after it was requested and again
    after its validation records were published, so an interrupted wait can
    be resumed instead of requesting a second certificate.
    ``pause`` must advance the same timeline as ``clock``.
    """

    def __init__(
        self,
        provider: ResourceProvider,
        *,
        poll_interval: float = 15.0,
        cancel_event: threading.Event | None = None,
        clock: Callable[[], float] = time.monotonic,
        pause: Optional[Callable[[float], bool]] = None,
        on_checkpoint: Optional[Callable[[CertificateRequest], None]] = None,
    ) -> None:
        self.provider = provider
        self.poll_interval = poll_interval
        self.cancel_event = cancel_event or threading.Event()
        self.clock = clock
        # Sleeps between polls on the timeline of ``clock``; True means cancelled.
        self.pause = pause or self.cancel_event.wait
        self.on_checkpoint = on_checkpoint

    # ------------------------------------------------------------------
    def provision_and_wait(
        self,
        domains: Sequence[str],
        zone: str,
        max_wait: float,
        *,
        resource_id: str = "certificate",
        resume: CertificateRequest | None = None,
    ) -> CertificateRequest:
        """Request (or resume) a certificate for ``domains`` and wait for a terminal state.

        Returns the request in state ``ISSUED`` or ``FAILED``; it does not raise
        on timeout or rejection. Raises :class:`ApplyCancelledError` when the
        cancel event is set while waiting.
        """

        if resume is not None and resume.matches(domains) and not resume.is_terminal:
            request = resume
            logger.info(
                "Resuming certificate %s for %s in state %s",
                request.certificate_arn,
                request.primary_domain,
                request.state.value,
            )
        else:
            request = self.request(resource_id, domains, zone)

        if request.state is CertificateState.REQUESTED or not request.validation_record_ids:
            self.publish_validation_records(request, zone)

        return self.wait(request, max_wait)

    # ------------------------------------------------------------------
    def request(self, resource_id: str, domains: Sequence[str], zone: str) -> CertificateRequest:
        if not domains:
            raise PermanentProviderError("A certificate needs at least one domain")

        primary, alternatives = domains[0], [name for name in domains[1:] if name != domains[0]]
        result = self.provider.create(
            ResourceKind.CERTIFICATE,
            {
                "domain_name": primary,
                "alternative_names": sorted(alternatives),
                "validation_method": "DNS",
                "zone_id": zone,
            },
        )
        request = CertificateRequest(
            id=resource_id,
            primary_domain=primary,
            alternative_domains=frozenset(alternatives),
            certificate_arn=result.remote_id,
            validation_records=[
                ValidationRecord.from_dict(item)
                for item in result.outputs.get("validation_records") or []
            ],
        )
        if not request.validation_records:
            raise PermanentProviderError(
                f"Certificate {result.remote_id} was requested without DNS validation records"
            )
        logger.info("Requested certificate %s for %s", request.certificate_arn, ", ".join(domains))
        self._checkpoint(request)
        return request

    def publish_validation_records(self, request: CertificateRequest, zone: str) -> CertificateRequest:
        """Upsert every distinct validation record into ``zone``."""

        distinct: Dict[Tuple[str, str], ValidationRecord] = {}
        for record in request.validation_records:
            distinct.setdefault((record.record_name, record.record_type), record)

        record_ids: List[str] = []
        for record in distinct.values():
            result = self.provider.create(
                ResourceKind.VALIDATION_RECORD,
                {
                    "zone_id": zone,
                    "name": record.record_name,
                    "type": record.record_type,
                    "value": record.record_value,
                    "ttl": VALIDATION_RECORD_TTL,
                },
            )
            record_ids.append(result.remote_id)
            logger.debug("Published validation record %s for %s", record.record_name, record.domain)

        request.validation_record_ids = record_ids
        if request.state is CertificateState.REQUESTED:
            request.transition(CertificateState.PENDING_VALIDATION)
        self._checkpoint(request)
        return request

    def wait(self, request: CertificateRequest, max_wait: float) -> CertificateRequest:
        """Poll the certificate status until it is issued, rejected or ``max_wait`` elapses."""

        if request.certificate_arn is None:
            raise PermanentProviderError(f"Certificate request {request.id} has no remote identifier")

        started = self.clock()
        deadline = started + max_wait
        polls = 0
        while True:
            status, reason = self.provider.certificate_status(request.certificate_arn)
            polls += 1
            if status is CertificateStatus.ISSUED:
                request.transition(CertificateState.ISSUED)
                logger.info("Certificate %s issued", request.certificate_arn)
                return request
            if status is CertificateStatus.FAILED:
                request.failure_reason = reason or "rejected by the certificate authority"
                request.transition(CertificateState.FAILED)
                logger.warning("Certificate %s failed: %s", request.certificate_arn, request.failure_reason)
                return request

            remaining = deadline - self.clock()
            if remaining <= 0:
                request.timed_out = True
                request.failure_reason = f"not issued within {max_wait:.0f}s"
                request.transition(CertificateState.FAILED)
                logger.warning(
                    "Gave up waiting for certificate %s after %d poll(s)", request.certificate_arn, polls
                )
                return request

            if polls % 10 == 0:
                logger.info(
                    "Still waiting for certificate %s (%.0fs elapsed)",
                    request.certificate_arn,
                    self.clock() - started,
                )
            if self.pause(min(self.poll_interval, remaining)):
                raise ApplyCancelledError(
                    f"Cancelled while waiting for certificate {request.certificate_arn}; "
                    "it will be resumed by the next apply"
                )

    def _checkpoint(self, request: CertificateRequest) -> None:
        if self.on_checkpoint is not None:
            self.on_checkpoint(request)
