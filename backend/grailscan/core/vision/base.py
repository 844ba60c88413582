"""Base abstract class for vision analyzers."""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Sequence

from grailscan.core.matching.models import TriggerReason, VisionCandidate, VisionMatchResult


class VisionAnalyzerError(Exception):
    """The analyzer could not be reached or returned an unusable response."""


class VisionAnalyzer(ABC):
    """Image-understanding service used by the scan orchestration.

    Implementations return a ``VisionMatchResult`` for any answer the service
    gave (including quota exhaustion and service-side errors carried in
    ``error``) and raise ``VisionAnalyzerError`` only when no answer was had.
    """

    @abstractmethod
    async def compare(
        self,
        image: str,
        candidates: Sequence[VisionCandidate],
        triggered_by: TriggerReason,
        scan_event_id: str | None = None,
        user_id: str | None = None,
    ) -> VisionMatchResult:
        """Score the image against candidates (comparison mode).

        Args:
            image: Base64 image or data URL
            candidates: Reduced candidates, at most the comparison limit
            triggered_by: Why vision was invoked
            scan_event_id: Scan event to attribute usage to
            user_id: User to attribute usage to

        Returns:
            Comparison result, or an identification result when the service
            fell back because no candidate scored well
        """

    @abstractmethod
    async def identify(
        self,
        image: str,
        triggered_by: TriggerReason,
        scan_event_id: str | None = None,
        user_id: str | None = None,
    ) -> VisionMatchResult:
        """Identify the comic from the image alone (identification mode)."""
