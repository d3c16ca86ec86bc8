# ============================================================
# Face Catalog - Core Catalog Module
# ============================================================
# Only leaf modules are re-exported here; core.index imports
# core.catalog.errors, so the stores and the service are
# imported from their own modules.

from core.catalog.coordinator import MutationCoordinator
from core.catalog.errors import CatalogError, ErrorKind
from core.catalog.models import Asset, BoundingBox, EmbeddingModel, Face, FaceSource, Person
from core.catalog.transaction import UnitOfWork

__all__ = [
    "Asset",
    "BoundingBox",
    "CatalogError",
    "EmbeddingModel",
    "ErrorKind",
    "Face",
    "FaceSource",
    "MutationCoordinator",
    "Person",
    "UnitOfWork",
]
