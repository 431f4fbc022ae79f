"""
Query pipeline orchestrator.

One call to RAGPipeline.run is one conversation turn:

    resolve tenant -> resolve conversation -> load history -> reformulate
    -> embed + vector search -> relevance filter -> generate -> reconcile
    citations -> persist (question and answer together)

Steps run strictly in that order. Only reformulation (no history) and the
citation rules of generation (no passages) vary between turns. Any failure
aborts the turn before anything is written.
"""
from datetime import datetime, timezone
from typing import List, Optional
import time
import uuid

from ci_rag.config import Settings, get_settings
from ci_rag.errors import InputError, NotFound
from ci_rag.models import (
    Conversation, Message, QueryResult, SearchResult, SourceCitation, TurnState,
    FilterOutcome, Selected, Empty,
)
from ci_rag.rag.concurrency import ConversationLocks, Deadline
from ci_rag.rag.generation import generate_answer, select_regime
from ci_rag.rag.reformulation import reformulate_question
from ci_rag.rag.relevance_filter import filter_candidates, resolve_selection
from ci_rag.rag.response_processing import build_source_citations, drop_unknown_markers
from ci_rag.logging_config import conversation_context, get_logger

logger = get_logger(__name__)


def outcome_label(outcome: FilterOutcome) -> str:
    if isinstance(outcome, Selected):
        return "selected"
    if isinstance(outcome, Empty):
        return "empty"
    return "unparseable"


def _iso(ts: float) -> str:
    return datetime.fromtimestamp(ts, tz=timezone.utc).isoformat()


class RAGPipeline:
    """
    Runs conversation turns against injected collaborators.

    Args:
        store: conversation store (ConversationManager or SqlConversationManager)
        embedder: object with embed_single(text, timeout)
        vector_search: object with search_report_chunks(embedding, client_id, match_threshold, match_count, timeout)
        llm: object with chat(messages, temperature, max_tokens, timeout)
        settings: tunables; defaults to the environment
        locks: per-conversation locks, shared by every pipeline serving the same store
    """

    def __init__(self, store, embedder, vector_search, llm, settings: Settings = None,
                 locks: ConversationLocks = None, model_name: str = None):
        self.store = store
        self.embedder = embedder
        self.vector_search = vector_search
        self.llm = llm
        self.settings = settings or get_settings()
        self.locks = locks or ConversationLocks()
        self.model_name = model_name or self.settings.chat_model


    def run(self, question: str, user_id: str, conversation_id: Optional[str] = None) -> QueryResult:
        """
        Answer one question and persist the turn.

        Raises:
            InputError: question or user_id missing (before any external call)
            NotFound: no tenant for user_id, or unknown conversation_id for this user
            UpstreamError: an embedding/generation/database call failed or the time budget ran out
        """
        if not isinstance(question, str) or not question.strip():
            raise InputError("question is required")
        if not isinstance(user_id, str) or not user_id.strip():
            raise InputError("user_id is required")
        question = question.strip()

        deadline = Deadline(self.settings.request_timeout_seconds)
        state = TurnState.NO_CONVERSATION

        logger.info(f"Query from user: {user_id}")
        logger.info(f"Received question: {question[:100]}...")
        logger.info(f"Conversation ID: {conversation_id or 'New conversation'}")

        client_id = self.store.get_client_id(user_id)
        if client_id is None:
            raise NotFound("Client not found")
        logger.info(f"Client ID: {client_id}")

        new_conversation = None
        if conversation_id is None:
            # Row is written with the first turn, so a failed turn leaves nothing behind
            new_conversation = Conversation(
                conversation_id=str(uuid.uuid4()),
                user_id=user_id,
                client_id=client_id
            )
            conversation_id = new_conversation.conversation_id
        elif self.store.get_conversation(conversation_id, user_id=user_id) is None:
            raise NotFound(f"Conversation {conversation_id} not found")
        state = self._advance(state, TurnState.CONVERSATION_RESOLVED)

        with conversation_context(conversation_id), \
                self.locks.hold(conversation_id, timeout=deadline.remaining()), \
                self.store.turn_lock(conversation_id, timeout=deadline.remaining()):
            # Stamped once both locks are held, so this turn sorts after the previous one
            asked_at = time.time()
            history = [] if new_conversation else self.store.get_history(conversation_id, self.settings.history_limit)
            logger.info(f"Found {len(history)} previous messages")
            state = self._advance(state, TurnState.HISTORY_LOADED)

            search_question = question
            if history:
                deadline.check("reformulation")
                search_question = reformulate_question(question, history, self.llm, timeout=deadline.remaining())
            state = self._advance(state, TurnState.QUESTION_REFORMULATED)

            candidates = self._retrieve(search_question, client_id, deadline)
            state = self._advance(state, TurnState.CANDIDATES_RETRIEVED)

            deadline.check("relevance filter")
            outcome = filter_candidates(
                search_question, candidates, self.llm,
                timeout=deadline.remaining(), max_sources=self.settings.max_sources
            )
            passages = resolve_selection(outcome, candidates, search_question, self.settings.max_sources)
            logger.info(f"Final sources after filtering: {len(passages)}")
            state = self._advance(state, TurnState.CANDIDATES_FILTERED)

            deadline.check("generation")
            regime = select_regime(passages, history)
            answer = generate_answer(question, regime, self.llm, history, timeout=deadline.remaining())
            state = self._advance(state, TurnState.ANSWER_GENERATED)

            answer = drop_unknown_markers(answer, len(passages))
            sources = build_source_citations(answer, passages)
            logger.info(f"Sources used in answer: {[s.source_number for s in sources]} ({len(sources)}/{len(passages)})")
            state = self._advance(state, TurnState.CITATIONS_RECONCILED)

            deadline.check("persistence")
            user_message, assistant_message = self._turn_messages(
                question, search_question, answer, candidates, passages, sources, outcome, asked_at
            )
            self.store.append_turn(conversation_id, user_message, assistant_message, new_conversation=new_conversation)
            self._advance(state, TurnState.PERSISTED)
            logger.info("Messages saved with sources")

        return QueryResult(
            answer=answer,
            conversation_id=conversation_id,
            sources=sources,
            has_history=bool(history)
        )


    def _retrieve(self, search_question: str, client_id: str, deadline: Deadline) -> List[SearchResult]:
        deadline.check("embedding")
        embedding = self.embedder.embed_single(search_question, timeout=deadline.remaining())

        deadline.check("vector search")
        return self.vector_search.search_report_chunks(
            embedding,
            client_id,
            match_threshold=self.settings.match_threshold,
            match_count=self.settings.match_count,
            timeout=deadline.remaining()
        )


    def _turn_messages(self, question: str, search_question: str, answer: str,
                       candidates: List[SearchResult], passages: List[SearchResult],
                       sources: List[SourceCitation], outcome: FilterOutcome, asked_at: float):
        answered_at = max(time.time(), asked_at + 1e-6)  # history order depends on created_at

        user_message = Message(
            role="user",
            content=question,
            metadata={
                "chunks_found": len(candidates),
                "reformulated_question": search_question if search_question != question else None,
                "timestamp": _iso(asked_at)
            },
            created_at=asked_at
        )
        assistant_message = Message(
            role="assistant",
            content=answer,
            metadata={
                "model": self.model_name,
                "sources_count": len(sources),
                "total_sources_available": len(passages),
                "total_chunks_found": len(candidates),
                "filter_outcome": outcome_label(outcome),
                "timestamp": _iso(answered_at),
                "sources": [s.to_dict() for s in sources]
            },
            created_at=answered_at
        )
        return user_message, assistant_message


    @staticmethod
    def _advance(current: TurnState, nxt: TurnState) -> TurnState:
        logger.debug(f"Turn state: {current.value} -> {nxt.value}")
        return nxt
