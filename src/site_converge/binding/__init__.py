"""CDN and DNS binding."""

from .orchestrator import BindingOrchestrator, policy_document

__all__ = ["BindingOrchestrator", "policy_document"]
