# ============================================================
# Face Catalog - Core Embedding Index Module
# ============================================================

from core.index.base_index import EmbeddingIndex, IndexEntry, IndexHit, VectorPartition
from core.index.flat_index import FlatIndex
from core.index.matrix_index import MatrixIndex
from core.index.account_index import AccountIndex

__all__ = [
    "EmbeddingIndex",
    "VectorPartition",
    "IndexEntry",
    "IndexHit",
    "FlatIndex",
    "MatrixIndex",
    "AccountIndex",
]
