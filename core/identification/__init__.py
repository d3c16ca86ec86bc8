# ============================================================
# Face Catalog - Core Identification Module
# ============================================================

from core.identification.engine import (
    IdentificationEngine,
    IdentificationResult,
    IdentifiedFace,
    IdentifyState,
    PersonCandidate,
)

__all__ = [
    "IdentificationEngine",
    "IdentificationResult",
    "IdentifiedFace",
    "IdentifyState",
    "PersonCandidate",
]
