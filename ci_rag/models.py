"""
Core data models for the CI report assistant.

These models represent the primary data structures used across
retrieval, relevance filtering, generation, and conversation management.
"""
from dataclasses import dataclass, field, asdict
from enum import Enum
from typing import List, Optional, Dict, Union
import time


@dataclass
class SearchResult:
    """
    A single retrieval candidate from vector search.

    Represents a report chunk with its metadata and the cosine-derived
    similarity to the query. Transient: lives for one pipeline invocation.
    """
    chunk_id: str
    rapport_id: str
    chunk_text: str
    similarity: float
    titre: str
    date_rapport: Optional[str] = None
    url_pdf: Optional[str] = None
    metadata: Dict = field(default_factory=dict)


@dataclass
class SourceCitation:
    """
    A passage the generated answer actually cited.

    source_number is the [n] marker shown to the model, never renumbered.
    """
    source_number: int
    titre: str
    date: Optional[str]
    excerpt: str
    rapport_id: str
    url_pdf: Optional[str]
    similarity: float

    def to_dict(self) -> Dict:
        """Convert to dict for JSON / message metadata."""
        return asdict(self)


@dataclass
class Message:
    """
    A persisted conversation message.

    Assistant metadata carries the citation list under "sources".
    """
    role: str
    content: str
    metadata: Dict = field(default_factory=dict)
    message_id: Optional[str] = None
    created_at: float = field(default_factory=time.time)


@dataclass
class Conversation:
    """
    A conversation scoped to one user and tenant, with its ordered messages.
    """
    conversation_id: str
    user_id: str
    client_id: str
    titre: Optional[str] = None
    messages: List[Message] = field(default_factory=list)
    created_at: float = field(default_factory=time.time)
    updated_at: float = field(default_factory=time.time)

    @property
    def message_count(self) -> int:
        return len(self.messages)


# Relevance filter outcome: Selected(indices) | Empty | Unparseable(reason)

@dataclass(frozen=True)
class Selected:
    """The filter picked these candidate indices, best first."""
    indices: List[int]


@dataclass(frozen=True)
class Empty:
    """The filter decided that no candidate is relevant. Final, no fallback."""


@dataclass(frozen=True)
class Unparseable:
    """The filter call failed or its output could not be used."""
    reason: str


FilterOutcome = Union[Selected, Empty, Unparseable]


class TurnState(str, Enum):
    """Progress of one question/answer turn through the pipeline."""
    NO_CONVERSATION = "no_conversation"
    CONVERSATION_RESOLVED = "conversation_resolved"
    HISTORY_LOADED = "history_loaded"
    QUESTION_REFORMULATED = "question_reformulated"
    CANDIDATES_RETRIEVED = "candidates_retrieved"
    CANDIDATES_FILTERED = "candidates_filtered"
    ANSWER_GENERATED = "answer_generated"
    CITATIONS_RECONCILED = "citations_reconciled"
    PERSISTED = "persisted"


@dataclass
class QueryResult:
    """What the pipeline returns to the caller for one turn."""
    answer: str
    conversation_id: str
    sources: List[SourceCitation]
    has_history: bool
