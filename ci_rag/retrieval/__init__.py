"""
Retrieval module: query embedding and tenant-scoped vector search.
"""

# allows: from ci_rag.retrieval import EmbeddingService, ReportChunkSearch
from .embeddings import EmbeddingService
from .semantic_search import ReportChunkSearch

__all__ = ['EmbeddingService', 'ReportChunkSearch']
