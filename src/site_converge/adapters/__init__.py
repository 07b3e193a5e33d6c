"""Provider adapters used by the convergence engine."""

from .aws import AwsProvider, translate_errors
from .provider import CLOUDFRONT_HOSTED_ZONE_ID, ProviderResult, ResourceProvider

__all__ = [
    "AwsProvider",
    "CLOUDFRONT_HOSTED_ZONE_ID",
    "ProviderResult",
    "ResourceProvider",
    "translate_errors",
]
