"""
RAG (Retrieval-Augmented Generation) module for question answering over reports.
"""
from .pipeline import RAGPipeline

__all__ = ['RAGPipeline']
