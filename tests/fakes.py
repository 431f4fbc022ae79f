"""
Test doubles for the pipeline's external collaborators.
"""
import time
from typing import List, Optional

from ci_rag.config import Settings
from ci_rag.errors import UpstreamError
from ci_rag.models import SearchResult
from ci_rag.rag.conversation_manager import ConversationManager
from ci_rag.rag.pipeline import RAGPipeline
from ci_rag.rag.reformulation import REFORMULATION_SYSTEM_PROMPT
from ci_rag.rag.relevance_filter import FILTER_SYSTEM_PROMPT

USER_ID = "user-1"
CLIENT_ID = "client-1"


def create_mock_chunk(idx: int, titre: str = None, date_rapport: str = "2025-11-14",
                      similarity: float = 0.5, chunk_text: str = None) -> SearchResult:
    """Helper to create mock SearchResult objects for testing."""
    return SearchResult(
        chunk_id=f"chunk-{idx}",
        rapport_id=f"rapport-{idx}",
        chunk_text=chunk_text or f"Competitor news item number {idx}.",
        similarity=similarity,
        titre=titre or f"Veille {idx}",
        date_rapport=date_rapport,
        url_pdf=f"https://reports.example.com/{idx}.pdf",
        metadata={}
    )


class FakeLLM:
    """
    Answers by prompt kind: "reformulate", "filter" or "generate".

    Each response may be a string or a callable taking the messages.
    """

    def __init__(self, reformulate="", select='{"relevant_indices": []}', generate="No information.",
                 fail: tuple = (), delay: float = 0.0):
        self.responses = {"reformulate": reformulate, "filter": select, "generate": generate}
        self.fail = fail
        self.delay = delay
        self.calls = []

    @staticmethod
    def kind_of(messages: List[dict]) -> str:
        system = messages[0]['content']
        if system == REFORMULATION_SYSTEM_PROMPT:
            return "reformulate"
        if system == FILTER_SYSTEM_PROMPT:
            return "filter"
        return "generate"

    def chat(self, messages: List[dict], temperature: float, max_tokens: int, timeout: Optional[float] = None) -> str:
        kind = self.kind_of(messages)
        self.calls.append({"kind": kind, "messages": messages, "temperature": temperature, "timeout": timeout})
        if self.delay:
            time.sleep(self.delay)
        if kind in self.fail:
            raise UpstreamError(f"{kind} call failed")
        response = self.responses[kind]
        return response(messages) if callable(response) else response

    def calls_of(self, kind: str) -> List[dict]:
        return [c for c in self.calls if c["kind"] == kind]


class FakeEmbedder:
    def __init__(self, fail: bool = False, delay: float = 0.0):
        self.fail = fail
        self.delay = delay
        self.texts = []

    def embed_single(self, text: str, timeout: Optional[float] = None) -> List[float]:
        self.texts.append(text)
        if self.delay:
            time.sleep(self.delay)
        if self.fail:
            raise UpstreamError("embedding failed")
        return [0.1, 0.2, 0.3]


class FakeVectorSearch:
    def __init__(self, candidates: List[SearchResult] = None, fail: bool = False):
        self.candidates = list(candidates or [])
        self.fail = fail
        self.calls = []

    def search_report_chunks(self, query_embedding, client_id, match_threshold=0.2, match_count=30, timeout=None):
        self.calls.append({"client_id": client_id, "match_threshold": match_threshold, "match_count": match_count})
        if self.fail:
            raise UpstreamError("vector search failed")
        return [c for c in self.candidates if c.similarity >= match_threshold][:match_count]


def build_pipeline(llm: FakeLLM = None, candidates: List[SearchResult] = None, store: ConversationManager = None,
                   embedder: FakeEmbedder = None, vector_search: FakeVectorSearch = None, **settings_overrides):
    """Pipeline wired to fakes and an in-memory store with one registered tenant."""
    if store is None:
        store = ConversationManager()
        store.register_client(USER_ID, CLIENT_ID)

    pipeline = RAGPipeline(
        store=store,
        embedder=embedder or FakeEmbedder(),
        vector_search=vector_search or FakeVectorSearch(candidates),
        llm=llm or FakeLLM(),
        settings=Settings(**settings_overrides),
        model_name="test-model"
    )
    return pipeline
