"""HTTP client for a remote vision-match service."""

from __future__ import annotations

from collections.abc import Sequence

import httpx
import structlog
from pydantic import ValidationError

from grailscan.core.matching.models import (
    TriggerReason,
    VisionCandidate,
    VisionMatchRequest,
    VisionMatchResult,
)

from .base import VisionAnalyzer, VisionAnalyzerError

logger = structlog.get_logger("grailscan.vision.client")


class VisionServiceClient(VisionAnalyzer):
    """Calls ``POST <url>`` with a camelCase vision-match request."""

    def __init__(
        self,
        url: str,
        timeout: float = 90.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.url = url
        self.client = httpx.AsyncClient(timeout=httpx.Timeout(timeout), transport=transport)

    async def aclose(self) -> None:
        await self.client.aclose()

    async def _post(self, request: VisionMatchRequest) -> VisionMatchResult:
        try:
            response = await self.client.post(
                self.url,
                json=request.model_dump(mode="json", by_alias=True),
            )
            response.raise_for_status()
            return VisionMatchResult.model_validate(response.json())
        except httpx.HTTPError as e:
            logger.error("Vision service request failed", url=self.url, error=str(e))
            raise VisionAnalyzerError(str(e)) from e
        except (ValueError, ValidationError) as e:
            logger.error("Vision service returned an invalid body", url=self.url, error=str(e))
            raise VisionAnalyzerError(str(e)) from e

    async def compare(
        self,
        image: str,
        candidates: Sequence[VisionCandidate],
        triggered_by: TriggerReason,
        scan_event_id: str | None = None,
        user_id: str | None = None,
    ) -> VisionMatchResult:
        return await self._post(
            VisionMatchRequest(
                image=image,
                candidates=list(candidates),
                triggered_by=triggered_by,
                scan_event_id=scan_event_id,
                user_id=user_id,
            )
        )

    async def identify(
        self,
        image: str,
        triggered_by: TriggerReason,
        scan_event_id: str | None = None,
        user_id: str | None = None,
    ) -> VisionMatchResult:
        return await self._post(
            VisionMatchRequest(
                image=image,
                triggered_by=triggered_by,
                scan_event_id=scan_event_id,
                user_id=user_id,
                force_identification=True,
            )
        )
