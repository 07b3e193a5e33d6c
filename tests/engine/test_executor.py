"""Tests for planning and applying resource graphs."""

from __future__ import annotations

import itertools
import threading
from dataclasses import replace
from pathlib import Path
from typing import Iterable

import pytest

from site_converge.config import ConvergeSettings
from site_converge.engine import RetryingProvider, RetryPolicy, TopologicalExecutor, default_handlers
from site_converge.errors import (
    ApplyCancelledError,
    CertificateValidationError,
    ConcurrentApplyError,
    CycleError,
    DeclarationError,
    PermanentProviderError,
    TransientProviderError,
    ValidationTimeoutError,
)
from site_converge.graph import ResourceGraph, static_site_nodes
from site_converge.models import (
    CertificateStatus,
    NodeOutcome,
    OperationKind,
    ReplacePolicy,
    ResourceKind,
    ResourceNode,
)
from site_converge.state import StateStore


def _executor(
    nodes: Iterable[ResourceNode],
    provider,
    settings: ConvergeSettings,
    **kwargs,
) -> TopologicalExecutor:
    return TopologicalExecutor(
        ResourceGraph.build(nodes),
        StateStore(settings.state_path),
        default_handlers(provider, settings, kwargs.get("cancel_event")),
        settings=settings,
        **kwargs,
    )


def _site(site_root: Path | None, settings: ConvergeSettings, *alternatives: str) -> list[ResourceNode]:
    return static_site_nodes(
        domain="example.com",
        alternative_domains=list(alternatives),
        asset_root=str(site_root) if site_root else None,
        zone_id=settings.zone_id,
    )


def _serving_path(domain: str = "example.com") -> list[ResourceNode]:
    return [
        ResourceNode("bucket", ResourceKind.BUCKET, {"bucket_name": "example-site"}),
        ResourceNode("identity", ResourceKind.ACCESS_IDENTITY, {"comment": "origin"}),
        ResourceNode(
            "cert",
            ResourceKind.CERTIFICATE,
            {"domain_name": domain, "alternative_names": [], "zone_id": "Z1"},
            replace_policy=ReplacePolicy.CREATE_BEFORE_DESTROY,
        ),
        ResourceNode(
            "cdn",
            ResourceKind.DISTRIBUTION,
            {"origin_bucket": "bucket", "access_identity": "identity", "certificate": "cert"},
        ),
    ]


def test_first_apply_creates_whole_site(fake_provider, settings, site_root) -> None:
    executor = _executor(_site(site_root, settings, "www.example.com"), fake_provider, settings)

    result = executor.apply()

    assert result.succeeded
    assert set(result.outcomes().values()) == {NodeOutcome.SUCCEEDED}
    assert len(fake_provider.calls_for(ResourceKind.ASSET_OBJECT, "create")) == 3
    assert len(fake_provider.calls_for(ResourceKind.ALIAS_RECORD, "create")) == 2
    assert executor.state.manifest("site-assets").keys() == {"index.html", "about.html", "css/site.css"}
    assert executor.state.get("site-certificate").output("status") == "ISSUED"
    assert not executor.state.is_locked


def test_second_apply_of_unchanged_graph_makes_no_mutations(fake_provider, settings, site_root) -> None:
    _executor(_site(site_root, settings), fake_provider, settings).apply()
    before = len(fake_provider.mutations())

    executor = _executor(_site(site_root, settings), fake_provider, settings)
    assert executor.plan().is_empty

    result = executor.apply()

    assert result.succeeded
    assert len(fake_provider.mutations()) == before
    assert {record.action for record in result.records} == {OperationKind.NOOP}


def test_operations_follow_dependency_edges(fake_provider, settings, site_root) -> None:
    clock = itertools.count().__next__
    executor = _executor(_site(site_root, settings), fake_provider, settings, clock=clock)

    result = executor.apply()

    records = {record.resource_id: record for record in result.records}
    for upstream, downstream in executor.graph.edges():
        assert records[upstream].finished_at <= records[downstream].started_at


def test_local_change_uploads_only_changed_asset(fake_provider, settings, site_root) -> None:
    _executor(_site(site_root, settings), fake_provider, settings).apply()
    (site_root / "about.html").write_bytes(b"<h1>about us</h1>")
    before = len(fake_provider.calls)

    executor = _executor(_site(site_root, settings), fake_provider, settings)
    plan = executor.plan()
    result = executor.apply()

    assert [op.resource_id for op in plan.changes] == ["site-assets"]
    assert result.succeeded
    assert [call for call in fake_provider.calls[before:] if call[0] != "read"] == [
        ("create", ResourceKind.ASSET_OBJECT, "example.com/about.html")
    ]


def test_pending_certificate_halts_before_distribution(fake_provider, settings, site_root) -> None:
    fake_provider.certificate_statuses = [(CertificateStatus.PENDING, None)]
    executor = _executor(_site(site_root, settings), fake_provider, settings)

    result = executor.apply()

    assert isinstance(result.error, ValidationTimeoutError)
    assert fake_provider.calls_for(ResourceKind.DISTRIBUTION) == []
    assert result.record("site-certificate").outcome is NodeOutcome.FAILED
    assert result.record("site-distribution").outcome is NodeOutcome.SKIPPED
    assert result.record("site-distribution").detail == "upstream failure"
    assert result.record("site-assets").outcome is NodeOutcome.SUCCEEDED
    assert executor.state.checkpoint("site-certificate")["state"] == "PENDING_VALIDATION"
    assert executor.state.get("site-certificate") is None


def test_timed_out_certificate_is_resumed_not_requested_again(fake_provider, settings, site_root) -> None:
    fake_provider.certificate_statuses = [(CertificateStatus.PENDING, None)]
    _executor(_site(site_root, settings), fake_provider, settings).apply()
    fake_provider.certificate_statuses = [(CertificateStatus.ISSUED, None)]

    executor = _executor(_site(site_root, settings), fake_provider, settings)
    result = executor.apply()

    assert result.succeeded
    assert len(fake_provider.calls_for(ResourceKind.CERTIFICATE, "create")) == 1
    assert len(fake_provider.calls_for(ResourceKind.VALIDATION_RECORD, "create")) == 1
    assert executor.state.checkpoint("site-certificate") is None
    assert len(fake_provider.calls_for(ResourceKind.DISTRIBUTION, "create")) == 1


def test_rejected_certificate_clears_checkpoint(fake_provider, settings) -> None:
    fake_provider.certificate_statuses = [(CertificateStatus.FAILED, "CAA_ERROR")]
    executor = _executor(_serving_path(), fake_provider, settings)

    result = executor.apply()

    assert isinstance(result.error, CertificateValidationError)
    assert executor.state.checkpoints() == {}


def test_resumed_apply_only_retries_failed_node(fake_provider, settings) -> None:
    nodes = [
        ResourceNode("bucket", ResourceKind.BUCKET, {"bucket_name": "example-site"}),
        ResourceNode("identity", ResourceKind.ACCESS_IDENTITY, {"comment": "origin"}),
        ResourceNode("policy", ResourceKind.BUCKET_POLICY, {"bucket": "bucket", "access_identity": "identity"}),
    ]
    fake_provider.fail_next(
        "create",
        ResourceKind.BUCKET_POLICY,
        TransientProviderError("connection reset"),
        TransientProviderError("connection reset"),
    )
    provider = RetryingProvider(fake_provider, RetryPolicy(max_attempts=2, base_delay=0), sleep=lambda _: None)

    first = _executor(nodes, provider, settings).apply()

    assert isinstance(first.error, PermanentProviderError)
    assert first.outcomes() == {
        "bucket": NodeOutcome.SUCCEEDED,
        "identity": NodeOutcome.SUCCEEDED,
        "policy": NodeOutcome.FAILED,
    }

    before = len(fake_provider.calls)
    second = _executor(nodes, provider, settings).apply()

    assert second.succeeded
    assert fake_provider.calls[before:] == [("create", ResourceKind.BUCKET_POLICY, "example-site")]
    assert second.record("bucket").action is OperationKind.NOOP
    assert second.record("identity").action is OperationKind.NOOP


def test_failure_skips_independent_nodes_as_halted(fake_provider, settings) -> None:
    nodes = [
        ResourceNode("a-bucket", ResourceKind.BUCKET, {"bucket_name": "a"}),
        ResourceNode("b-bucket", ResourceKind.BUCKET, {"bucket_name": "b"}),
    ]
    fake_provider.fail_next("create", ResourceKind.BUCKET, PermanentProviderError("BucketAlreadyExists"))

    result = _executor(nodes, fake_provider, settings).apply()

    assert result.record("a-bucket").outcome is NodeOutcome.FAILED
    assert result.record("b-bucket").outcome is NodeOutcome.SKIPPED
    assert result.record("b-bucket").detail == "apply halted"


def test_node_missing_required_attributes_fails_without_provider_calls(fake_provider, settings) -> None:
    nodes = [
        ResourceNode("bucket", ResourceKind.BUCKET, {"bucket_name": "example-site"}),
        ResourceNode("cdn", ResourceKind.DISTRIBUTION, {"certificate": None}, depends_on=frozenset({"bucket"})),
    ]

    result = _executor(nodes, fake_provider, settings).apply()

    assert isinstance(result.error, DeclarationError)
    assert result.record("bucket").outcome is NodeOutcome.SUCCEEDED
    assert result.record("cdn").outcome is NodeOutcome.FAILED
    assert "access_identity, origin_bucket" in result.record("cdn").detail
    assert fake_provider.calls_for(ResourceKind.DISTRIBUTION) == []


def test_cycle_fails_before_any_provider_call(fake_provider) -> None:
    nodes = [
        ResourceNode("a", ResourceKind.BUCKET, {"bucket_name": "a"}, depends_on=frozenset({"b"})),
        ResourceNode("b", ResourceKind.BUCKET, {"bucket_name": "b"}, depends_on=frozenset({"a"})),
    ]

    with pytest.raises(CycleError):
        ResourceGraph.build(nodes)

    assert fake_provider.calls == []


def test_concurrent_apply_is_refused(fake_provider, settings) -> None:
    executor = _executor(_serving_path(), fake_provider, settings)

    with StateStore(settings.state_path).lock():
        with pytest.raises(ConcurrentApplyError):
            executor.apply()

    assert fake_provider.calls == []


def test_cancelled_apply_skips_remaining_nodes(fake_provider, settings) -> None:
    cancel = threading.Event()
    cancel.set()
    executor = _executor(_serving_path(), fake_provider, settings, cancel_event=cancel)

    result = executor.apply()

    assert isinstance(result.error, ApplyCancelledError)
    assert set(result.outcomes().values()) == {NodeOutcome.SKIPPED}
    assert fake_provider.mutations() == []


def test_create_before_destroy_moves_dependents_first(fake_provider, settings) -> None:
    _executor(_serving_path("example.com"), fake_provider, settings).apply()
    store = StateStore(settings.state_path)
    old_arn = store.get("cert").remote_identifier
    distribution_id = store.get("cdn").remote_identifier

    executor = _executor(_serving_path("example.org"), fake_provider, settings)
    plan = executor.plan()

    assert plan.get("cert").action is OperationKind.REPLACE
    assert plan.get("cdn").action is OperationKind.UPDATE
    assert plan.get("cdn").reason == "rewire to replaced cert"

    result = executor.apply(plan)

    assert result.succeeded
    new_arn = executor.state.get("cert").remote_identifier
    assert new_arn != old_arn
    assert executor.state.get("cert").deposed == []
    assert fake_provider.resources[(ResourceKind.DISTRIBUTION, distribution_id)]["certificate_arn"] == new_arn
    assert not fake_provider.exists(ResourceKind.CERTIFICATE, old_arn)

    calls = fake_provider.calls
    assert calls.index(("update", ResourceKind.DISTRIBUTION, distribution_id)) < calls.index(
        ("delete", ResourceKind.CERTIFICATE, old_arn)
    )
    assert result.record("cert (deposed)").outcome is NodeOutcome.SUCCEEDED


def test_dependents_rewire_after_failed_create_before_destroy(fake_provider, settings) -> None:
    _executor(_serving_path("example.com"), fake_provider, settings).apply()
    old_arn = StateStore(settings.state_path).get("cert").remote_identifier

    fake_provider.fail_next("update", ResourceKind.DISTRIBUTION, PermanentProviderError("distribution busy"))
    failed = _executor(_serving_path("example.org"), fake_provider, settings).apply()

    assert isinstance(failed.error, PermanentProviderError)
    assert fake_provider.exists(ResourceKind.CERTIFICATE, old_arn)

    executor = _executor(_serving_path("example.org"), fake_provider, settings)
    plan = executor.plan()

    assert plan.get("cert").action is OperationKind.NOOP
    assert plan.get("cdn").action is OperationKind.UPDATE
    assert plan.get("cdn").reason == "rewire to replaced cert"

    result = executor.apply(plan)

    assert result.succeeded
    new_arn = executor.state.get("cert").remote_identifier
    distribution_id = executor.state.get("cdn").remote_identifier
    assert fake_provider.resources[(ResourceKind.DISTRIBUTION, distribution_id)]["certificate_arn"] == new_arn
    assert not fake_provider.exists(ResourceKind.CERTIFICATE, old_arn)
    assert executor.state.get("cert").deposed == []
    assert executor.plan().is_empty


def test_shared_validation_records_survive_certificate_replacement(fake_provider, settings, site_root) -> None:
    _executor(_site(site_root, settings, "www.example.com"), fake_provider, settings).apply()

    executor = _executor(_site(site_root, settings, "www.example.com", "blog.example.com"), fake_provider, settings)
    result = executor.apply()

    assert result.succeeded
    assert fake_provider.calls_for(ResourceKind.VALIDATION_RECORD, "delete") == []
    assert executor.plan().is_empty


def test_in_place_replacement_deletes_then_creates(fake_provider, settings) -> None:
    _executor([ResourceNode("bucket", ResourceKind.BUCKET, {"bucket_name": "old"})], fake_provider, settings).apply()

    executor = _executor([ResourceNode("bucket", ResourceKind.BUCKET, {"bucket_name": "new"})], fake_provider, settings)
    result = executor.apply()

    assert result.record("bucket").action is OperationKind.REPLACE
    assert fake_provider.mutations()[-2:] == [
        ("delete", ResourceKind.BUCKET, "old"),
        ("create", ResourceKind.BUCKET, "new"),
    ]


def test_undeclared_resources_are_destroyed(fake_provider, settings) -> None:
    nodes = [
        ResourceNode("bucket", ResourceKind.BUCKET, {"bucket_name": "example-site"}),
        ResourceNode("identity", ResourceKind.ACCESS_IDENTITY, {"comment": "origin"}),
    ]
    _executor(nodes, fake_provider, settings).apply()

    executor = _executor(nodes[:1], fake_provider, settings)
    plan = executor.plan()
    result = executor.apply(plan)

    assert [(op.resource_id, op.action, op.reason) for op in plan.changes] == [
        ("identity", OperationKind.DESTROY, "no longer declared")
    ]
    assert result.succeeded
    assert executor.state.get("identity") is None


def test_destroy_removes_everything_in_reverse_order(fake_provider, settings, site_root) -> None:
    _executor(_site(site_root, settings), fake_provider, settings).apply()

    executor = _executor([], fake_provider, settings)
    result = executor.destroy()

    assert result.succeeded
    assert executor.state.entries() == []
    assert fake_provider.resources == {}
    order = [op.resource_id for op in result.plan.operations]
    assert order.index("site-distribution") < order.index("site-certificate")
    assert order.index("site-assets") < order.index("site-bucket")


def test_destroy_cleans_up_pending_certificate(fake_provider, settings) -> None:
    fake_provider.certificate_statuses = [(CertificateStatus.PENDING, None)]
    _executor(_serving_path(), fake_provider, settings).apply()

    result = _executor([], fake_provider, settings).destroy()

    assert result.succeeded
    assert not any(kind is ResourceKind.CERTIFICATE for kind, _ in fake_provider.resources)
    assert not any(kind is ResourceKind.VALIDATION_RECORD for kind, _ in fake_provider.resources)


def test_verify_remote_reuploads_missing_objects(fake_provider, settings, site_root) -> None:
    _executor(_site(site_root, settings), fake_provider, settings).apply()
    fake_provider.delete(ResourceKind.ASSET_OBJECT, "example.com/index.html")

    assert _executor(_site(site_root, settings), fake_provider, settings).plan().is_empty

    verifying = replace(settings, verify_remote_assets=True)
    executor = _executor(_site(site_root, verifying), fake_provider, verifying)
    plan = executor.plan()
    result = executor.apply(plan)

    assert [(op.resource_id, op.reason) for op in plan.changes] == [("site-assets", "verify remote copies")]
    assert result.succeeded
    assert fake_provider.exists(ResourceKind.ASSET_OBJECT, "example.com/index.html")
    assert fake_provider.calls_for(ResourceKind.ASSET_OBJECT, "create")[-1] == (
        "create",
        ResourceKind.ASSET_OBJECT,
        "example.com/index.html",
    )
