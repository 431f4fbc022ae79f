"""
Error taxonomy for the query pipeline.

Only these exceptions cross the pipeline boundary. Quality degradations
(reformulation failure, unusable relevance-filter output) are logged and
absorbed where they happen; they never surface as errors.
"""


class RAGError(Exception):
    """Base class for pipeline errors."""


class InputError(RAGError):
    """Request is missing a required field. Raised before any external call."""


class NotFound(RAGError):
    """No tenant for the user, or the conversation does not exist for this user."""


class UpstreamError(RAGError):
    """An embedding, generation or database call failed, or the time budget ran out."""
