"""Database models and utilities.

This module exports all database models.
"""

from __future__ import annotations

from grailscan.db.models import ScanCorrection, ScanVisionUsage, metadata

__all__ = [
    "metadata",
    "ScanCorrection",
    "ScanVisionUsage",
]
