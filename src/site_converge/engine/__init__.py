"""Planning and execution of resource operations."""

from .executor import TopologicalExecutor
from .handlers import ApplyContext, ResourceHandler, default_handlers
from .retry import RetryingProvider, RetryPolicy, call_with_retry

__all__ = [
    "ApplyContext",
    "ResourceHandler",
    "RetryPolicy",
    "RetryingProvider",
    "TopologicalExecutor",
    "call_with_retry",
    "default_handlers",
]
