"""Expansion of the ``site:`` shorthand into the static-website resource set."""

from __future__ import annotations

from typing import Any, List, Mapping, Sequence

from ..errors import DeclarationError
from ..models import ReplacePolicy, ResourceKind, ResourceNode

DEFAULT_PREFIX = "site"


def static_site_nodes(
    *,
    domain: str,
    bucket_name: str | None = None,
    alternative_domains: Sequence[str] = (),
    asset_root: str | None = None,
    key_prefix: str = "",
    zone_id: str | None = None,
    default_root_object: str = "index.html",
    price_class: str = "PriceClass_100",
    ipv6: bool = False,
    prefix: str = DEFAULT_PREFIX,
    source: str | None = None,
) -> List[ResourceNode]:
    """Return the nodes serving ``domain`` from a private bucket through a CDN.

    The bucket policy is bound to the access identity's principal rather than
    the distribution, so policy and distribution never reference each other.
    """

    if not domain:
        raise DeclarationError("site.domain is required")

    aliases = [domain, *[name for name in alternative_domains if name != domain]]
    bucket_id = f"{prefix}-bucket"
    identity_id = f"{prefix}-identity"
    certificate_id = f"{prefix}-certificate"
    distribution_id = f"{prefix}-distribution"

    def node(resource_id: str, kind: ResourceKind, attributes: Mapping[str, Any], **extra: Any) -> ResourceNode:
        return ResourceNode(
            id=resource_id,
            kind=kind,
            desired_attributes=dict(attributes),
            source=source,
            **extra,
        )

    nodes = [
        node(
            bucket_id,
            ResourceKind.BUCKET,
            {"bucket_name": bucket_name or domain, "block_public_access": True},
        ),
        node(identity_id, ResourceKind.ACCESS_IDENTITY, {"comment": f"Origin access for {domain}"}),
        node(
            f"{prefix}-bucket-policy",
            ResourceKind.BUCKET_POLICY,
            {"bucket": bucket_id, "access_identity": identity_id},
        ),
        node(
            certificate_id,
            ResourceKind.CERTIFICATE,
            {
                "domain_name": domain,
                "alternative_names": sorted(aliases[1:]),
                "zone_id": zone_id,
            },
            replace_policy=ReplacePolicy.CREATE_BEFORE_DESTROY,
        ),
        node(
            distribution_id,
            ResourceKind.DISTRIBUTION,
            {
                "origin_bucket": bucket_id,
                "access_identity": identity_id,
                "certificate": certificate_id,
                "aliases": aliases,
                "default_root_object": default_root_object,
                "price_class": price_class,
                "ipv6": ipv6,
            },
        ),
    ]

    if asset_root:
        nodes.append(
            node(
                f"{prefix}-assets",
                ResourceKind.ASSET_OBJECT,
                {"bucket": bucket_id, "root": asset_root, "key_prefix": key_prefix},
            )
        )

    record_types = ["A", "AAAA"] if ipv6 else ["A"]
    for name in aliases:
        for record_type in record_types:
            suffix = "" if record_type == "A" else "-ipv6"
            nodes.append(
                node(
                    f"{prefix}-alias-{name}{suffix}",
                    ResourceKind.ALIAS_RECORD,
                    {"name": name, "type": record_type, "zone_id": zone_id, "target": distribution_id},
                )
            )

    return nodes
