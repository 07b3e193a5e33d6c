"""Shared fixtures: an in-memory provider that records every call."""

from __future__ import annotations

import itertools
import threading
from dataclasses import replace
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Tuple

import pytest

from site_converge.adapters import CLOUDFRONT_HOSTED_ZONE_ID, ProviderResult, ResourceProvider
from site_converge.config import ConvergeSettings
from site_converge.errors import ProviderError
from site_converge.models import CertificateStatus, ResourceKind

MUTATING_METHODS = frozenset({"create", "update", "delete"})


class FakeProvider(ResourceProvider):
    """Keeps resources in a dict and records ``(method, kind, target)`` calls.

    ``failures[(method, kind)]`` holds exceptions raised, one per call, before
    the call takes effect. ``certificate_statuses`` is consumed one value per
    status query; the last value repeats.
    """

    def __init__(self) -> None:
        self.resources: Dict[Tuple[ResourceKind, str], Dict[str, Any]] = {}
        self.calls: List[Tuple[str, ResourceKind, str]] = []
        self.failures: Dict[Tuple[str, ResourceKind], List[ProviderError]] = {}
        self.certificate_statuses: List[Tuple[CertificateStatus, Optional[str]]] = [
            (CertificateStatus.ISSUED, None)
        ]
        self._counter = itertools.count(1)
        self._lock = threading.Lock()

    # Inspection helpers --------------------------------------------------
    def mutations(self) -> List[Tuple[str, ResourceKind, str]]:
        return [call for call in self.calls if call[0] in MUTATING_METHODS]

    def calls_for(self, kind: ResourceKind, method: str | None = None) -> List[Tuple[str, ResourceKind, str]]:
        return [call for call in self.calls if call[1] is kind and (method is None or call[0] == method)]

    def exists(self, kind: ResourceKind, remote_id: str) -> bool:
        return (kind, remote_id) in self.resources

    def fail_next(self, method: str, kind: ResourceKind, *errors: ProviderError) -> None:
        self.failures.setdefault((method, kind), []).extend(errors)

    # Provider contract ---------------------------------------------------
    def create(self, kind: ResourceKind, attributes: Mapping[str, Any]) -> ProviderResult:
        with self._lock:
            serial = next(self._counter)
            remote_id, outputs = self._materialize(kind, dict(attributes), serial)
            self._record("create", kind, remote_id)
            self.resources[(kind, remote_id)] = {**dict(attributes), **outputs}
        return ProviderResult(remote_id=remote_id, outputs=outputs)

    def read(self, kind: ResourceKind, remote_id: str) -> Optional[ProviderResult]:
        with self._lock:
            self._record("read", kind, remote_id)
            stored = self.resources.get((kind, remote_id))
        return ProviderResult(remote_id=remote_id, outputs=dict(stored)) if stored is not None else None

    def update(self, kind: ResourceKind, remote_id: str, attributes: Mapping[str, Any]) -> ProviderResult:
        with self._lock:
            self._record("update", kind, remote_id)
            stored = self.resources.setdefault((kind, remote_id), {})
            stored.update(attributes)
            outputs = dict(stored)
        return ProviderResult(remote_id=remote_id, outputs=outputs)

    def delete(self, kind: ResourceKind, remote_id: str) -> None:
        with self._lock:
            self._record("delete", kind, remote_id)
            self.resources.pop((kind, remote_id), None)

    def certificate_status(self, remote_id: str) -> Tuple[CertificateStatus, Optional[str]]:
        with self._lock:
            self._record("certificate_status", ResourceKind.CERTIFICATE, remote_id)
            if len(self.certificate_statuses) > 1:
                return self.certificate_statuses.pop(0)
            return self.certificate_statuses[0]

    # ---------------------------------------------------------------------
    def _record(self, method: str, kind: ResourceKind, target: str) -> None:
        pending = self.failures.get((method, kind))
        if pending:
            self.calls.append((f"{method}!", kind, target))
            raise pending.pop(0)
        self.calls.append((method, kind, target))

    @staticmethod
    def _materialize(kind: ResourceKind, attributes: Dict[str, Any], serial: int) -> Tuple[str, Dict[str, Any]]:
        if kind is ResourceKind.BUCKET:
            name = attributes["bucket_name"]
            region = attributes.get("region", "us-east-1")
            return name, {
                "bucket_name": name,
                "arn": f"arn:aws:s3:::{name}",
                "regional_domain_name": f"{name}.s3.{region}.amazonaws.com",
            }
        if kind is ResourceKind.ACCESS_IDENTITY:
            identity = f"E{serial:04d}"
            return identity, {"principal": f"arn:aws:iam::cloudfront:user/Origin Access Identity {identity}"}
        if kind is ResourceKind.BUCKET_POLICY:
            return attributes["bucket_name"], {"bucket_name": attributes["bucket_name"]}
        if kind is ResourceKind.ASSET_OBJECT:
            return f"{attributes['bucket']}/{attributes['key']}", {"content_hash": attributes["content_hash"]}
        if kind is ResourceKind.CERTIFICATE:
            domains = [attributes["domain_name"], *attributes.get("alternative_names", [])]
            return f"arn:aws:acm:us-east-1:123456789012:certificate/{serial}", {
                "validation_records": [
                    {
                        "domain": domain,
                        "record_name": f"_token.{domain}.",
                        "record_value": f"_answer{serial}.acm-validations.aws.",
                        "record_type": "CNAME",
                    }
                    for domain in domains
                ]
            }
        if kind in (ResourceKind.VALIDATION_RECORD, ResourceKind.ALIAS_RECORD):
            return f"{attributes['zone_id']}|{attributes['name']}|{attributes.get('type', 'A')}", {}
        if kind is ResourceKind.DISTRIBUTION:
            return f"D{serial:04d}", {
                "arn": f"arn:aws:cloudfront::123456789012:distribution/D{serial:04d}",
                "domain_name": f"d{serial:04d}.cloudfront.net",
                "status": "Deployed",
                "hosted_zone_id": CLOUDFRONT_HOSTED_ZONE_ID,
            }
        raise AssertionError(f"unexpected kind {kind}")


@pytest.fixture()
def fake_provider() -> FakeProvider:
    return FakeProvider()


@pytest.fixture()
def settings(tmp_path: Path) -> ConvergeSettings:
    """Settings with zero waits, writing state under ``tmp_path``."""

    return replace(
        ConvergeSettings(),
        zone_id="Z123EXAMPLE",
        state_path=tmp_path / "state" / "state.json",
        certificate_max_wait=0.0,
        certificate_poll_interval=0.0,
        distribution_poll_interval=0.0,
        retry_base_delay=0.0,
        retry_max_delay=0.0,
        upload_workers=2,
    )


@pytest.fixture()
def site_root(tmp_path: Path) -> Path:
    root = tmp_path / "public"
    (root / "css").mkdir(parents=True)
    (root / "index.html").write_bytes(b"<h1>home</h1>")
    (root / "about.html").write_bytes(b"<h1>about</h1>")
    (root / "css" / "site.css").write_bytes(b"body { margin: 0 }")
    return root
