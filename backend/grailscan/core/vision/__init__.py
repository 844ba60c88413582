"""Vision analyzer: AI gateway client, prompts, the vision-match service and its HTTP client."""

from .base import VisionAnalyzer, VisionAnalyzerError
from .client import VisionServiceClient
from .gateway import AIGateway, AIGatewayError
from .service import VisionMatchService, VisionNotConfiguredError

__all__ = [
    "VisionAnalyzer",
    "VisionAnalyzerError",
    "VisionServiceClient",
    "AIGateway",
    "AIGatewayError",
    "VisionMatchService",
    "VisionNotConfiguredError",
]
