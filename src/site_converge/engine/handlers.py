"""Per-kind operations invoked by the topological executor."""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Dict, Mapping

from ..adapters.provider import ProviderResult, ResourceProvider
from ..assets import AssetSynchronizer, object_id
from ..binding import BindingOrchestrator
from ..certificates import CertificateWaiter
from ..config import ConvergeSettings
from ..errors import (
    BindingError,
    CertificateValidationError,
    DeclarationError,
    ValidationTimeoutError,
)
from ..models import (
    CertificateRequest,
    CertificateState,
    CertificateStatus,
    DeposedInstance,
    ResourceKind,
    ResourceNode,
    StateEntry,
    UploadPlan,
    attribute_hash,
)
from ..state import StateStore

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class ApplyContext:
    """What a handler may consult while converging one node."""

    state: StateStore
    settings: ConvergeSettings
    cancel_event: threading.Event = field(default_factory=threading.Event)

    def entry(self, resource_id: str) -> StateEntry:
        entry = self.state.get(resource_id)
        if entry is None:
            raise BindingError(f"Resource '{resource_id}' has not been applied yet")
        return entry

    def result(self, resource_id: str) -> ProviderResult:
        entry = self.entry(resource_id)
        return ProviderResult(remote_id=entry.remote_identifier, outputs=dict(entry.outputs))


class ResourceHandler:
    """Default handler: forward declared attributes to the provider unchanged."""

    def __init__(self, kind: ResourceKind, provider: ResourceProvider) -> None:
        self.kind = kind
        self.provider = provider

    def fingerprint(self, node: ResourceNode, ctx: ApplyContext) -> str:
        return node.attribute_hash()

    def needs_refresh(self, node: ResourceNode, entry: StateEntry, ctx: ApplyContext) -> bool:
        """Return ``True`` to re-run an unchanged node against the remote side."""

        return False

    def attributes(self, node: ResourceNode, ctx: ApplyContext) -> Dict[str, Any]:
        return dict(node.desired_attributes)

    def create(self, node: ResourceNode, ctx: ApplyContext) -> ProviderResult:
        return self.provider.create(self.kind, self.attributes(node, ctx))

    def update(self, node: ResourceNode, entry: StateEntry, ctx: ApplyContext) -> ProviderResult:
        return self.provider.update(self.kind, entry.remote_identifier, self.attributes(node, ctx))

    def delete(self, entry: StateEntry, ctx: ApplyContext) -> None:
        self.provider.delete(self.kind, entry.remote_identifier)

    def delete_deposed(self, entry: StateEntry, instance: DeposedInstance, ctx: ApplyContext) -> None:
        self.provider.delete(self.kind, instance.remote_identifier)


class BucketHandler(ResourceHandler):
    def attributes(self, node: ResourceNode, ctx: ApplyContext) -> Dict[str, Any]:
        attributes = dict(node.desired_attributes)
        attributes.setdefault("region", ctx.settings.region)
        attributes.setdefault("block_public_access", True)
        return attributes


class AccessIdentityHandler(ResourceHandler):
    def __init__(self, provider: ResourceProvider, orchestrator: BindingOrchestrator) -> None:
        super().__init__(ResourceKind.ACCESS_IDENTITY, provider)
        self.orchestrator = orchestrator

    def create(self, node: ResourceNode, ctx: ApplyContext) -> ProviderResult:
        return self.orchestrator.ensure_access_identity(self._comment(node))

    def update(self, node: ResourceNode, entry: StateEntry, ctx: ApplyContext) -> ProviderResult:
        return self.orchestrator.ensure_access_identity(self._comment(node), entry.remote_identifier)

    @staticmethod
    def _comment(node: ResourceNode) -> str:
        return str(node.desired_attributes.get("comment") or node.id)


class BucketPolicyHandler(ResourceHandler):
    def __init__(self, provider: ResourceProvider, orchestrator: BindingOrchestrator) -> None:
        super().__init__(ResourceKind.BUCKET_POLICY, provider)
        self.orchestrator = orchestrator

    def create(self, node: ResourceNode, ctx: ApplyContext) -> ProviderResult:
        attributes = node.desired_attributes
        return self.orchestrator.bind_policy(
            ctx.result(str(attributes["bucket"])), ctx.result(str(attributes["access_identity"]))
        )

    def update(self, node: ResourceNode, entry: StateEntry, ctx: ApplyContext) -> ProviderResult:
        return self.create(node, ctx)


class DistributionHandler(ResourceHandler):
    """Creates or updates the distribution once its certificate is issued."""

    def __init__(self, provider: ResourceProvider, orchestrator: BindingOrchestrator) -> None:
        super().__init__(ResourceKind.DISTRIBUTION, provider)
        self.orchestrator = orchestrator

    def create(self, node: ResourceNode, ctx: ApplyContext) -> ProviderResult:
        return self._ensure(node, ctx, None)

    def update(self, node: ResourceNode, entry: StateEntry, ctx: ApplyContext) -> ProviderResult:
        return self._ensure(node, ctx, entry.remote_identifier)

    def _ensure(self, node: ResourceNode, ctx: ApplyContext, existing_id: str | None) -> ProviderResult:
        attributes = node.desired_attributes
        return self.orchestrator.ensure_distribution(
            attributes,
            ctx.result(str(attributes["origin_bucket"])),
            ctx.result(str(attributes["access_identity"])),
            self._certificate_arn(node, ctx),
            existing_id=existing_id,
        )

    @staticmethod
    def _certificate_arn(node: ResourceNode, ctx: ApplyContext) -> str | None:
        certificate_id = node.desired_attributes.get("certificate")
        if not certificate_id:
            return None
        entry = ctx.entry(str(certificate_id))
        if entry.output("status") != CertificateState.ISSUED.value:
            raise BindingError(
                f"Certificate '{certificate_id}' is {entry.output('status')}, not ISSUED; "
                f"refusing to bind it to '{node.id}'"
            )
        return str(entry.remote_identifier)


class AliasRecordHandler(ResourceHandler):
    def __init__(self, provider: ResourceProvider, orchestrator: BindingOrchestrator) -> None:
        super().__init__(ResourceKind.ALIAS_RECORD, provider)
        self.orchestrator = orchestrator

    def create(self, node: ResourceNode, ctx: ApplyContext) -> ProviderResult:
        attributes = node.desired_attributes
        return self.orchestrator.ensure_alias_record(
            str(attributes["name"]),
            str(attributes["zone_id"]),
            ctx.result(str(attributes["target"])),
            str(attributes.get("type") or "A"),
        )

    def update(self, node: ResourceNode, entry: StateEntry, ctx: ApplyContext) -> ProviderResult:
        # Record writes are upserts keyed by name and type.
        return self.create(node, ctx)


class CertificateHandler(ResourceHandler):
    """Requests a certificate, publishes its validation records and waits for issuance."""

    def __init__(self, provider: ResourceProvider) -> None:
        super().__init__(ResourceKind.CERTIFICATE, provider)

    def create(self, node: ResourceNode, ctx: ApplyContext) -> ProviderResult:
        attributes = node.desired_attributes
        domains = [str(attributes["domain_name"])]
        domains.extend(str(name) for name in attributes.get("alternative_names") or [])
        max_wait = ctx.settings.certificate_max_wait

        waiter = CertificateWaiter(
            self.provider,
            poll_interval=ctx.settings.certificate_poll_interval,
            cancel_event=ctx.cancel_event,
            on_checkpoint=lambda request: ctx.state.save_checkpoint(node.id, request.to_checkpoint()),
        )
        request = waiter.provision_and_wait(
            domains,
            str(attributes["zone_id"]),
            max_wait,
            resource_id=node.id,
            resume=self._resumable(node, ctx),
        )

        if request.state is CertificateState.FAILED:
            if request.timed_out:
                raise ValidationTimeoutError(node.id, max_wait)
            ctx.state.clear_checkpoint(node.id)
            raise CertificateValidationError(node.id, request.failure_reason)

        return ProviderResult(
            remote_id=str(request.issued_arn),
            outputs={
                "certificate_arn": request.issued_arn,
                "status": request.state.value,
                "domains": request.domains,
                "validation_records": [record.to_dict() for record in request.validation_records],
                "validation_record_ids": list(request.validation_record_ids),
            },
        )

    def update(self, node: ResourceNode, entry: StateEntry, ctx: ApplyContext) -> ProviderResult:
        status, reason = self.provider.certificate_status(entry.remote_identifier)
        if status is not CertificateStatus.ISSUED:
            raise CertificateValidationError(node.id, reason or f"certificate is {status.value}")
        return ProviderResult(remote_id=entry.remote_identifier, outputs=dict(entry.outputs))

    def delete(self, entry: StateEntry, ctx: ApplyContext) -> None:
        for record_id in entry.output("validation_record_ids") or []:
            self.provider.delete(ResourceKind.VALIDATION_RECORD, str(record_id))
        self.provider.delete(ResourceKind.CERTIFICATE, entry.remote_identifier)

    def delete_deposed(self, entry: StateEntry, instance: DeposedInstance, ctx: ApplyContext) -> None:
        # Records with the same name and value validate the replacement too.
        in_use = set(entry.output("validation_record_ids") or [])
        for record_id in instance.outputs.get("validation_record_ids") or []:
            if record_id not in in_use:
                self.provider.delete(ResourceKind.VALIDATION_RECORD, str(record_id))
        self.provider.delete(ResourceKind.CERTIFICATE, instance.remote_identifier)

    def _resumable(self, node: ResourceNode, ctx: ApplyContext) -> CertificateRequest | None:
        checkpoint = ctx.state.checkpoint(node.id)
        if not checkpoint:
            return None

        request = CertificateRequest.from_checkpoint(checkpoint)
        if request.certificate_arn and self.provider.read(ResourceKind.CERTIFICATE, request.certificate_arn):
            return request

        logger.info("Checkpointed certificate for %s no longer exists; requesting a new one", node.id)
        ctx.state.clear_checkpoint(node.id)
        return None


class AssetHandler(ResourceHandler):
    """Synchronizes a local asset tree into the referenced bucket."""

    def __init__(self, provider: ResourceProvider) -> None:
        super().__init__(ResourceKind.ASSET_OBJECT, provider)

    def fingerprint(self, node: ResourceNode, ctx: ApplyContext) -> str:
        records = self._synchronizer(node, ctx).scan(self._root(node))
        return attribute_hash({**node.desired_attributes, "tree": UploadPlan(unchanged=records).digest})

    def needs_refresh(self, node: ResourceNode, entry: StateEntry, ctx: ApplyContext) -> bool:
        return ctx.settings.verify_remote_assets

    def create(self, node: ResourceNode, ctx: ApplyContext) -> ProviderResult:
        return self._sync(node, ctx, ctx.state.manifest(node.id))

    def update(self, node: ResourceNode, entry: StateEntry, ctx: ApplyContext) -> ProviderResult:
        manifest = ctx.state.manifest(node.id)
        if entry.output("bucket_name") != self._bucket(node, ctx):
            manifest = {}
        return self._sync(node, ctx, manifest)

    def delete(self, entry: StateEntry, ctx: ApplyContext) -> None:
        bucket = str(entry.output("bucket_name") or "")
        for remote_key in sorted(ctx.state.manifest(entry.resource_id)):
            self.provider.delete(ResourceKind.ASSET_OBJECT, object_id(bucket, remote_key))
            ctx.state.forget_asset(entry.resource_id, remote_key)

    def _sync(self, node: ResourceNode, ctx: ApplyContext, manifest: Mapping[str, str]) -> ProviderResult:
        synchronizer = self._synchronizer(node, ctx)
        bucket = self._bucket(node, ctx)
        plan = synchronizer.sync(self._root(node), manifest)
        if ctx.settings.verify_remote_assets:
            plan = synchronizer.verify(plan, self.provider, bucket)

        synchronizer.upload(
            plan,
            self.provider,
            bucket,
            on_uploaded=lambda record: ctx.state.record_asset(
                node.id, record.remote_key, record.content_hash
            ),
        )
        return ProviderResult(
            remote_id=object_id(bucket, synchronizer.key_prefix),
            outputs={
                "bucket_name": bucket,
                "object_count": len(plan.records),
                "uploaded": len(plan.actions),
                "digest": plan.digest,
            },
        )

    @staticmethod
    def _root(node: ResourceNode) -> str:
        root = node.desired_attributes.get("root")
        if not root:
            raise DeclarationError(f"Asset resource '{node.id}' has no root directory")
        return str(root)

    @staticmethod
    def _bucket(node: ResourceNode, ctx: ApplyContext) -> str:
        origin = ctx.result(str(node.desired_attributes["bucket"]))
        return str(origin.outputs.get("bucket_name") or origin.remote_id)

    @staticmethod
    def _synchronizer(node: ResourceNode, ctx: ApplyContext) -> AssetSynchronizer:
        attributes = node.desired_attributes
        return AssetSynchronizer(
            exclude=[*ctx.settings.asset_excludes, *(attributes.get("exclude") or [])],
            key_prefix=str(attributes.get("key_prefix") or ""),
            max_workers=ctx.settings.upload_workers,
        )


def default_handlers(
    provider: ResourceProvider,
    settings: ConvergeSettings,
    cancel_event: threading.Event | None = None,
) -> Dict[ResourceKind, ResourceHandler]:
    """Return a handler for every resource kind."""

    orchestrator = BindingOrchestrator(
        provider,
        deploy_timeout=settings.distribution_deploy_timeout,
        poll_interval=settings.distribution_poll_interval,
        cancel_event=cancel_event,
    )
    return {
        ResourceKind.BUCKET: BucketHandler(ResourceKind.BUCKET, provider),
        ResourceKind.BUCKET_POLICY: BucketPolicyHandler(provider, orchestrator),
        ResourceKind.ASSET_OBJECT: AssetHandler(provider),
        ResourceKind.DISTRIBUTION: DistributionHandler(provider, orchestrator),
        ResourceKind.ACCESS_IDENTITY: AccessIdentityHandler(provider, orchestrator),
        ResourceKind.CERTIFICATE: CertificateHandler(provider),
        ResourceKind.VALIDATION_RECORD: ResourceHandler(ResourceKind.VALIDATION_RECORD, provider),
        ResourceKind.ALIAS_RECORD: AliasRecordHandler(provider, orchestrator),
    }
