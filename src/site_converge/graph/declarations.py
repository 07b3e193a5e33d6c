"""Load resource declarations from YAML documents."""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Mapping, Sequence

import yaml

from ..errors import DeclarationError, DuplicateIdError
from ..models import ReplacePolicy, ResourceKind, ResourceNode
from .site import static_site_nodes

ZONE_BOUND_KINDS = frozenset(
    {ResourceKind.CERTIFICATE, ResourceKind.VALIDATION_RECORD, ResourceKind.ALIAS_RECORD}
)


@dataclass(slots=True)
class DeclarationDocument:
    """A parsed declaration file."""

    path: Path
    resources: List[Mapping[str, Any]] = field(default_factory=list)
    site: Mapping[str, Any] | None = None
    settings: Mapping[str, Any] = field(default_factory=dict)


def load_documents(paths: Sequence[Path | str]) -> List[DeclarationDocument]:
    """Parse every declaration file in ``paths``, in order."""

    return [_load_document(Path(path)) for path in paths]


def _load_document(path: Path) -> DeclarationDocument:
    if not path.exists():
        raise DeclarationError(f"Declaration file not found: {path}")

    try:
        content = path.read_text(encoding="utf-8")
    except OSError as exc:  # pragma: no cover - filesystem errors surfaced to caller
        raise DeclarationError(f"Failed to read declaration file {path}") from exc

    try:
        data = yaml.safe_load(content) or {}
    except yaml.YAMLError as exc:
        raise DeclarationError(f"Invalid YAML in declaration file {path}") from exc

    if not isinstance(data, Mapping):
        raise DeclarationError(f"Declaration file must be a mapping: {path}")

    resources = data.get("resources") or []
    if not isinstance(resources, list):
        raise DeclarationError(f"'resources' must be a list in {path}")

    site = data.get("site")
    if site is not None and not isinstance(site, Mapping):
        raise DeclarationError(f"'site' must be a mapping in {path}")

    settings = data.get("settings") or {}
    if not isinstance(settings, Mapping):
        raise DeclarationError(f"'settings' must be a mapping in {path}")

    return DeclarationDocument(path=path.resolve(), resources=resources, site=site, settings=settings)


class DeclarationLoader:
    """Turn declaration documents into :class:`ResourceNode` instances.

    ``zone_id`` is threaded into every DNS-bearing node that does not name its
    own zone. Nodes repeated across documents must agree exactly.
    """

    def __init__(self, *, zone_id: str | None = None) -> None:
        self.zone_id = zone_id

    # ------------------------------------------------------------------
    def load(self, documents: Sequence[DeclarationDocument]) -> List[ResourceNode]:
        nodes: Dict[str, ResourceNode] = {}
        for document in documents:
            for node in self._document_nodes(document):
                existing = nodes.get(node.id)
                if existing is None:
                    nodes[node.id] = node
                elif not existing.same_declaration(node):
                    raise DuplicateIdError(node.id, [existing.source, node.source])
        return list(nodes.values())

    def load_paths(self, paths: Sequence[Path | str]) -> List[ResourceNode]:
        return self.load(load_documents(paths))

    # ------------------------------------------------------------------
    def _document_nodes(self, document: DeclarationDocument) -> List[ResourceNode]:
        source = str(document.path)
        nodes: List[ResourceNode] = []

        if document.site is not None:
            nodes.extend(self._site_nodes(document.site, document.path.parent, source))

        for index, entry in enumerate(document.resources):
            if not isinstance(entry, Mapping):
                raise DeclarationError(f"Resource #{index} in {source} must be a mapping")
            nodes.append(self._parse_resource(entry, document.path.parent, source))

        bound = [self._bind_zone(node) for node in nodes]
        for node in bound:
            missing = node.missing_attributes()
            if missing:
                raise DeclarationError(
                    f"Resource '{node.id}' ({node.kind.value}) in {source} is missing {', '.join(missing)}"
                )
        return bound

    def _parse_resource(self, entry: Mapping[str, Any], base_dir: Path, source: str) -> ResourceNode:
        resource_id = str(entry.get("id") or "").strip()
        if not resource_id:
            raise DeclarationError(f"Resource without an id in {source}")

        try:
            kind = ResourceKind(str(entry.get("kind", "")).strip().lower())
        except ValueError as exc:
            raise DeclarationError(f"Unknown kind '{entry.get('kind')}' for '{resource_id}' in {source}") from exc

        try:
            policy = ReplacePolicy(str(entry.get("replace_policy") or ReplacePolicy.IN_PLACE.value))
        except ValueError as exc:
            raise DeclarationError(
                f"Unknown replace_policy '{entry.get('replace_policy')}' for '{resource_id}'"
            ) from exc

        attributes = entry.get("attributes") or {}
        if not isinstance(attributes, Mapping):
            raise DeclarationError(f"Attributes of '{resource_id}' must be a mapping in {source}")
        attributes = dict(attributes)

        if kind is ResourceKind.ASSET_OBJECT and attributes.get("root"):
            attributes["root"] = str(_resolve(base_dir, str(attributes["root"])))

        depends_on = entry.get("depends_on") or []
        if isinstance(depends_on, str):
            depends_on = [depends_on]

        return ResourceNode(
            id=resource_id,
            kind=kind,
            desired_attributes=attributes,
            depends_on=frozenset(str(item) for item in depends_on),
            replace_policy=policy,
            source=source,
        )

    def _site_nodes(self, site: Mapping[str, Any], base_dir: Path, source: str) -> List[ResourceNode]:
        asset_root = site.get("asset_root")
        alternative = site.get("alternative_domains") or []
        if isinstance(alternative, str):
            alternative = [alternative]

        return static_site_nodes(
            domain=str(site.get("domain") or ""),
            bucket_name=site.get("bucket_name"),
            alternative_domains=[str(name) for name in alternative],
            asset_root=str(_resolve(base_dir, str(asset_root))) if asset_root else None,
            key_prefix=str(site.get("key_prefix") or ""),
            zone_id=site.get("zone_id") or self.zone_id,
            default_root_object=str(site.get("default_root_object") or "index.html"),
            price_class=str(site.get("price_class") or "PriceClass_100"),
            ipv6=bool(site.get("ipv6", False)),
            prefix=str(site.get("prefix") or "site"),
            source=source,
        )

    def _bind_zone(self, node: ResourceNode) -> ResourceNode:
        if node.kind not in ZONE_BOUND_KINDS or node.desired_attributes.get("zone_id"):
            return node
        if not self.zone_id:
            raise DeclarationError(
                f"Resource '{node.id}' needs a DNS zone; set settings.zone_id or pass --zone-id"
            )
        node.desired_attributes["zone_id"] = self.zone_id
        return node


def _resolve(base_dir: Path, value: str) -> Path:
    candidate = Path(value).expanduser()
    if not candidate.is_absolute():
        candidate = base_dir / candidate
    return candidate.resolve()
