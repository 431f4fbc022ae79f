"""
Ask one question against the configured database and model providers.

Usage:
    python -m scripts.ask_question --user-id <auth user id> "What happened on November 14th?"
    python -m scripts.ask_question --user-id <id> --conversation-id <uuid> "and for the 17th?"
"""
import argparse
import json
import logging

from dotenv import load_dotenv

from ci_rag.config import get_settings
from ci_rag.db.database import SessionLocal
from ci_rag.errors import RAGError
from ci_rag.llm_client import get_llm_client
from ci_rag.logging_config import setup_logging
from ci_rag.rag.conversation_manager import SqlConversationManager
from ci_rag.rag.pipeline import RAGPipeline
from ci_rag.retrieval import EmbeddingService, ReportChunkSearch

load_dotenv()
logger = logging.getLogger(__name__)


def main():
    parser = argparse.ArgumentParser(description="Run one RAG query turn")
    parser.add_argument("question", help="Question to ask")
    parser.add_argument("--user-id", required=True, help="Auth user id owning the tenant")
    parser.add_argument("--conversation-id", default=None, help="Continue an existing conversation")
    parser.add_argument("--log-level", default="INFO")
    parser.add_argument("--json", action="store_true", help="Print the raw response as JSON")
    args = parser.parse_args()

    setup_logging(level=args.log_level)
    settings = get_settings()

    pipeline = RAGPipeline(
        store=SqlConversationManager(SessionLocal),
        embedder=EmbeddingService.from_settings(settings),
        vector_search=ReportChunkSearch(SessionLocal),
        llm=get_llm_client(settings),
        settings=settings
    )

    try:
        result = pipeline.run(args.question, args.user_id, args.conversation_id)
    except RAGError as e:
        logger.error(f"Query failed: {type(e).__name__}: {e}")
        raise SystemExit(1)

    if args.json:
        print(json.dumps({
            "answer": result.answer,
            "conversation_id": result.conversation_id,
            "sources": [s.to_dict() for s in result.sources],
            "has_history": result.has_history
        }, ensure_ascii=False, indent=2))
        return

    print(f"\nConversation: {result.conversation_id} (history: {result.has_history})\n")
    print(result.answer)
    if result.sources:
        print("\nSources:")
        for source in result.sources:
            print(f"  [{source.source_number}] {source.titre} ({source.date}) - similarity {source.similarity:.3f}")
            if source.url_pdf:
                print(f"      {source.url_pdf}")


if __name__ == "__main__":
    main()
