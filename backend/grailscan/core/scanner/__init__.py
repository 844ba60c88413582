"""Scan orchestration: identification search, vision match, correction cache and pipeline."""

from .corrections import CorrectionCache
from .identification import IdentificationSearch, build_queries, map_search_result
from .orchestrator import VisionMatchOrchestrator, apply_vision_override
from .pipeline import ScanOutcome, ScanPipeline, correction_to_candidate

__all__ = [
    "CorrectionCache",
    "IdentificationSearch",
    "build_queries",
    "map_search_result",
    "VisionMatchOrchestrator",
    "apply_vision_override",
    "ScanOutcome",
    "ScanPipeline",
    "correction_to_candidate",
]
