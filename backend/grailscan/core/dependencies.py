"""Service wiring and FastAPI dependency providers for the scanner."""

from __future__ import annotations

from dataclasses import dataclass

import structlog
from fastapi import HTTPException, Request, status

from grailscan.core.comicvine.catalog import ComicVineCatalog
from grailscan.core.comicvine.client import create_comicvine_client
from grailscan.core.config import Settings
from grailscan.core.database import SessionFactory
from grailscan.core.matching.config import MatchingConfig, get_matching_config
from grailscan.core.scanner.corrections import CorrectionCache
from grailscan.core.scanner.identification import IdentificationSearch
from grailscan.core.scanner.orchestrator import VisionMatchOrchestrator
from grailscan.core.scanner.pipeline import ScanPipeline
from grailscan.core.vision.base import VisionAnalyzer
from grailscan.core.vision.client import VisionServiceClient
from grailscan.core.vision.gateway import AIGateway
from grailscan.core.vision.service import VisionMatchService

logger = structlog.get_logger("grailscan.dependencies")


@dataclass
class ScannerServices:
    """Everything the scanner routes use, built once per app."""

    config: MatchingConfig
    catalog: ComicVineCatalog
    vision_service: VisionMatchService
    analyzer: VisionAnalyzer
    orchestrator: VisionMatchOrchestrator
    corrections: CorrectionCache
    pipeline: ScanPipeline

    async def aclose(self) -> None:
        if self.vision_service.gateway is not None:
            await self.vision_service.gateway.aclose()
        if isinstance(self.analyzer, VisionServiceClient):
            await self.analyzer.aclose()


def build_scanner_services(settings: Settings, session_factory: SessionFactory) -> ScannerServices:
    """Build the scanner services from settings.

    The vision analyzer is the remote service when ``vision_service_url`` is
    set, otherwise the in-process vision-match service.
    """
    config = get_matching_config(settings)
    catalog = ComicVineCatalog(create_comicvine_client(settings))

    gateway = None
    if settings.ai_gateway_api_key:
        gateway = AIGateway(
            url=settings.ai_gateway_url,
            api_key=settings.ai_gateway_api_key,
            model=settings.vision_model,
            max_tokens=settings.vision_max_tokens,
        )
    else:
        logger.warning("AI gateway API key not configured, vision matching disabled")

    vision_service = VisionMatchService(
        gateway,
        session_factory,
        config=config,
        monthly_limit=settings.vision_monthly_limit,
    )

    analyzer: VisionAnalyzer = vision_service
    if settings.vision_service_url:
        analyzer = VisionServiceClient(settings.vision_service_url)
        logger.info("Using remote vision service", url=settings.vision_service_url)

    orchestrator = VisionMatchOrchestrator(analyzer, IdentificationSearch(catalog, config), config)
    corrections = CorrectionCache(session_factory, config)
    return ScannerServices(
        config=config,
        catalog=catalog,
        vision_service=vision_service,
        analyzer=analyzer,
        orchestrator=orchestrator,
        corrections=corrections,
        pipeline=ScanPipeline(corrections, orchestrator, config),
    )


def get_scanner_services(request: Request) -> ScannerServices:
    """Dependency returning the app's scanner services.

    Raises:
        HTTPException: 503 if the services were not initialized
    """
    services = getattr(request.app.state, "scanner", None)
    if services is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Scanner services not initialized",
        )
    return services


def get_matching_settings(request: Request) -> MatchingConfig:
    return get_scanner_services(request).config


def get_scan_pipeline(request: Request) -> ScanPipeline:
    return get_scanner_services(request).pipeline


def get_orchestrator(request: Request) -> VisionMatchOrchestrator:
    return get_scanner_services(request).orchestrator


def get_correction_cache(request: Request) -> CorrectionCache:
    return get_scanner_services(request).corrections


def get_vision_service(request: Request) -> VisionMatchService:
    return get_scanner_services(request).vision_service
