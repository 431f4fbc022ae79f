"""
RAG assistant over archived competitive intelligence reports.
"""
