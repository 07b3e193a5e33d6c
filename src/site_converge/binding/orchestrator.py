"""Wire a private storage origin, an issued certificate and DNS aliases into a CDN."""

from __future__ import annotations

import logging
import threading
import time
from typing import Any, Callable, Dict, Mapping, Optional

from ..adapters.provider import CLOUDFRONT_HOSTED_ZONE_ID, ProviderResult, ResourceProvider
from ..errors import ApplyCancelledError, BindingError
from ..models import ResourceKind

logger = logging.getLogger(__name__)

DEPLOYED_STATUS = "Deployed"


def policy_document(bucket_name: str, identity_principal: str) -> Dict[str, Any]:
    """Grant read access on ``bucket_name`` to the origin access identity only.

    The policy names the identity's principal, which exists before the
    distribution does, so the policy never has to reference the distribution.
    """

    return {
        "Version": "2012-10-17",
        "Statement": [
            {
                "Sid": "AllowOriginAccessIdentityRead",
                "Effect": "Allow",
                "Principal": {"AWS": identity_principal},
                "Action": "s3:GetObject",
                "Resource": f"arn:aws:s3:::{bucket_name}/*",
            }
        ],
    }


def _bucket_name(origin: ProviderResult) -> str:
    return str(origin.outputs.get("bucket_name") or origin.remote_id)


class BindingOrchestrator:
    """Create the serving path bucket -> access identity -> distribution -> DNS."""

    def __init__(
        self,
        provider: ResourceProvider,
        *,
        deploy_timeout: float = 1800.0,
        poll_interval: float = 20.0,
        cancel_event: threading.Event | None = None,
        clock: Callable[[], float] = time.monotonic,
        pause: Optional[Callable[[float], bool]] = None,
    ) -> None:
        self.provider = provider
        self.deploy_timeout = deploy_timeout
        self.poll_interval = poll_interval
        self.cancel_event = cancel_event or threading.Event()
        self.clock = clock
        # Sleeps between polls on the timeline of ``clock``; True means cancelled.
        self.pause = pause or self.cancel_event.wait

    # ------------------------------------------------------------------
    def ensure_access_identity(self, comment: str, existing_id: str | None = None) -> ProviderResult:
        attributes = {"comment": comment}
        if existing_id:
            return self.provider.update(ResourceKind.ACCESS_IDENTITY, existing_id, attributes)
        result = self.provider.create(ResourceKind.ACCESS_IDENTITY, attributes)
        logger.info("Created access identity %s", result.remote_id)
        return result

    def bind_policy(self, origin: ProviderResult, access_identity: ProviderResult) -> ProviderResult:
        principal = access_identity.outputs.get("principal")
        if not principal:
            raise BindingError(f"Access identity {access_identity.remote_id} has no principal")

        bucket_name = _bucket_name(origin)
        return self.provider.create(
            ResourceKind.BUCKET_POLICY,
            {"bucket_name": bucket_name, "policy": policy_document(bucket_name, str(principal))},
        )

    def distribution_attributes(
        self,
        spec: Mapping[str, Any],
        origin: ProviderResult,
        access_identity: ProviderResult,
        certificate_arn: str | None,
    ) -> Dict[str, Any]:
        origin_domain = origin.outputs.get("regional_domain_name")
        if not origin_domain:
            raise BindingError(f"Origin bucket {origin.remote_id} has no regional domain name")

        return {
            "aliases": list(spec.get("aliases") or []),
            "origin_id": f"s3-{_bucket_name(origin)}",
            "origin_domain": origin_domain,
            "access_identity_id": access_identity.remote_id,
            "certificate_arn": certificate_arn,
            "default_root_object": spec.get("default_root_object", "index.html"),
            "price_class": spec.get("price_class", "PriceClass_100"),
            "ipv6": bool(spec.get("ipv6", False)),
            "comment": spec.get("comment") or f"Serves {_bucket_name(origin)}",
        }

    def ensure_distribution(
        self,
        spec: Mapping[str, Any],
        origin: ProviderResult,
        access_identity: ProviderResult,
        certificate_arn: str | None,
        *,
        existing_id: str | None = None,
    ) -> ProviderResult:
        if spec.get("aliases") and not certificate_arn:
            raise BindingError("Alias domains need an issued certificate before the distribution is bound")
        attributes = self.distribution_attributes(spec, origin, access_identity, certificate_arn)
        if existing_id:
            result = self.provider.update(ResourceKind.DISTRIBUTION, existing_id, attributes)
        else:
            result = self.provider.create(ResourceKind.DISTRIBUTION, attributes)
            logger.info("Created distribution %s", result.remote_id)
        return self.wait_deployed(result)

    def wait_deployed(self, distribution: ProviderResult) -> ProviderResult:
        """Poll ``distribution`` until its status is ``Deployed``."""

        deadline = self.clock() + self.deploy_timeout
        current: Optional[ProviderResult] = distribution
        while True:
            if current is None:
                raise BindingError(f"Distribution {distribution.remote_id} disappeared while deploying")
            if current.outputs.get("status") == DEPLOYED_STATUS:
                return current

            remaining = deadline - self.clock()
            if remaining <= 0:
                raise BindingError(
                    f"Distribution {distribution.remote_id} not deployed within {self.deploy_timeout:.0f}s"
                )
            logger.debug("Distribution %s is %s", distribution.remote_id, current.outputs.get("status"))
            if self.pause(min(self.poll_interval, remaining)):
                raise ApplyCancelledError(f"Cancelled while distribution {distribution.remote_id} deploys")
            current = self.provider.read(ResourceKind.DISTRIBUTION, distribution.remote_id)

    def ensure_alias_record(
        self,
        domain: str,
        zone: str,
        distribution: ProviderResult,
        record_type: str = "A",
    ) -> ProviderResult:
        target = distribution.outputs.get("domain_name")
        if not target:
            raise BindingError(f"Distribution {distribution.remote_id} has no domain name")

        return self.provider.create(
            ResourceKind.ALIAS_RECORD,
            {
                "zone_id": zone,
                "name": domain,
                "type": record_type,
                "alias_target": {
                    "dns_name": target,
                    "hosted_zone_id": distribution.outputs.get("hosted_zone_id")
                    or CLOUDFRONT_HOSTED_ZONE_ID,
                },
            },
        )
