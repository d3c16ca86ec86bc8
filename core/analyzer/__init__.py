# ============================================================
# Face Catalog - Core Analyzer Module
# ============================================================

from core.analyzer.base_analyzer import AnalysisResult, BaseAnalyzer, FaceObservation
from core.analyzer.insightface_analyzer import InsightFaceAnalyzer

__all__ = [
    "AnalysisResult",
    "BaseAnalyzer",
    "FaceObservation",
    "InsightFaceAnalyzer",
]
