"""Tests for certificate request, validation publishing and waiting."""

from __future__ import annotations

import threading

import pytest

from site_converge.certificates import VALIDATION_RECORD_TTL, CertificateWaiter
from site_converge.errors import ApplyCancelledError
from site_converge.models import CertificateState, CertificateStatus, ResourceKind


class StepClock:
    """Fake monotonic clock; ``pause`` advances it instead of sleeping."""

    def __init__(self) -> None:
        self.now = 0.0
        self.waits: list[float] = []

    def __call__(self) -> float:
        return self.now

    def pause(self, seconds: float) -> bool:
        self.waits.append(seconds)
        self.now += seconds
        return False


def test_issued_certificate_publishes_records_once(fake_provider) -> None:
    checkpoints: list[CertificateState] = []
    waiter = CertificateWaiter(
        fake_provider,
        poll_interval=0,
        on_checkpoint=lambda request: checkpoints.append(request.state),
    )

    request = waiter.provision_and_wait(
        ["example.com", "www.example.com", "example.com"], "Z1", max_wait=10, resource_id="cert"
    )

    assert request.state is CertificateState.ISSUED
    assert request.issued_arn == request.certificate_arn
    assert request.alternative_domains == frozenset({"www.example.com"})
    assert checkpoints == [CertificateState.REQUESTED, CertificateState.PENDING_VALIDATION]

    records = fake_provider.calls_for(ResourceKind.VALIDATION_RECORD, "create")
    assert [call[2] for call in records] == ["Z1|_token.example.com.|CNAME", "Z1|_token.www.example.com.|CNAME"]
    stored = fake_provider.resources[(ResourceKind.VALIDATION_RECORD, records[0][2])]
    assert stored["ttl"] == VALIDATION_RECORD_TTL


def test_pending_until_timeout_returns_failed_request(fake_provider) -> None:
    fake_provider.certificate_statuses = [(CertificateStatus.PENDING, None)]
    clock = StepClock()
    waiter = CertificateWaiter(fake_provider, poll_interval=15, clock=clock, pause=clock.pause)

    request = waiter.provision_and_wait(["example.com"], "Z1", max_wait=40)

    assert request.state is CertificateState.FAILED
    assert request.timed_out is True
    assert clock.waits == [15, 15, 10]


def test_rejected_certificate_carries_reason(fake_provider) -> None:
    fake_provider.certificate_statuses = [
        (CertificateStatus.PENDING, None),
        (CertificateStatus.FAILED, "CAA_ERROR"),
    ]
    waiter = CertificateWaiter(fake_provider, poll_interval=0)

    request = waiter.provision_and_wait(["example.com"], "Z1", max_wait=60)

    assert request.state is CertificateState.FAILED
    assert request.timed_out is False
    assert request.failure_reason == "CAA_ERROR"


def test_resume_skips_request_and_publish(fake_provider) -> None:
    waiter = CertificateWaiter(fake_provider, poll_interval=0)
    original = waiter.request("cert", ["example.com"], "Z1")
    waiter.publish_validation_records(original, "Z1")
    calls_before = len(fake_provider.mutations())

    resumed = waiter.provision_and_wait(["example.com"], "Z1", max_wait=5, resume=original)

    assert resumed.certificate_arn == original.certificate_arn
    assert resumed.state is CertificateState.ISSUED
    assert len(fake_provider.mutations()) == calls_before


def test_resume_for_other_domains_requests_new_certificate(fake_provider) -> None:
    waiter = CertificateWaiter(fake_provider, poll_interval=0)
    original = waiter.request("cert", ["example.com"], "Z1")

    request = waiter.provision_and_wait(["example.org"], "Z1", max_wait=5, resume=original)

    assert request.certificate_arn != original.certificate_arn
    assert len(fake_provider.calls_for(ResourceKind.CERTIFICATE, "create")) == 2


def test_cancel_event_interrupts_wait(fake_provider) -> None:
    fake_provider.certificate_statuses = [(CertificateStatus.PENDING, None)]
    event = threading.Event()
    event.set()
    waiter = CertificateWaiter(fake_provider, poll_interval=30, cancel_event=event)

    with pytest.raises(ApplyCancelledError, match="resumed"):
        waiter.provision_and_wait(["example.com"], "Z1", max_wait=600)


def test_illegal_transition_is_rejected(fake_provider) -> None:
    request = CertificateWaiter(fake_provider).request("cert", ["example.com"], "Z1")

    with pytest.raises(ValueError, match="Illegal certificate transition"):
        request.transition(CertificateState.ISSUED)
