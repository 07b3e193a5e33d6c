"""Resource graph construction from declarations."""

from .declarations import DeclarationDocument, DeclarationLoader, load_documents
from .resource_graph import ResourceGraph, build, destroy_order
from .site import static_site_nodes

__all__ = [
    "DeclarationDocument",
    "DeclarationLoader",
    "ResourceGraph",
    "build",
    "destroy_order",
    "load_documents",
    "static_site_nodes",
]
