"""External collaborators: the provider API and the zone classifier."""

from .classifier import (
    AIGatewayClassifier,
    HintOnlyClassifier,
    ZoneClassification,
    ZoneClassifier,
    create_classifier,
    looks_like_internal_code,
    review_classifications,
)
from .provider import NavioClient, ProviderZone, parse_provider_zone

__all__ = [
    "AIGatewayClassifier",
    "HintOnlyClassifier",
    "NavioClient",
    "ProviderZone",
    "ZoneClassification",
    "ZoneClassifier",
    "create_classifier",
    "looks_like_internal_code",
    "parse_provider_zone",
    "review_classifications",
]
