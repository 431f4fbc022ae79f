from fastapi import Depends, FastAPI, Query
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from typing import Optional, List
import time

from ci_rag.config import get_settings
from ci_rag.errors import InputError, NotFound, UpstreamError
from ci_rag.logging_config import setup_logging, get_logger
from ci_rag.db.database import SessionLocal
from ci_rag.llm_client import get_llm_client
from ci_rag.rag.conversation_manager import SqlConversationManager
from ci_rag.rag.pipeline import RAGPipeline
from ci_rag.retrieval import EmbeddingService, ReportChunkSearch

settings = get_settings()

# Configure logging on startup
setup_logging(level=settings.log_level, log_file=settings.log_file)
logger = get_logger(__name__)

app = FastAPI(title="CI Report Assistant API", version="0.1.0")

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

GENERIC_ERROR = "Could not answer the question, please try again."

# Built on first use so importing the app does not require provider credentials
_store = None
_pipeline = None


class QueryRequest(BaseModel):
    # Optional here so a missing field is reported as {"error": ...}, not a 422
    question: Optional[str] = None
    user_id: Optional[str] = None
    conversation_id: Optional[str] = None

class SourceCitationResponse(BaseModel):
    source_number: int
    titre: str
    date: Optional[str] = None
    excerpt: str
    rapport_id: str
    url_pdf: Optional[str] = None
    similarity: float

class QueryResponse(BaseModel):
    answer: str
    conversation_id: str
    sources: List[SourceCitationResponse]
    has_history: bool

class ConversationSummaryResponse(BaseModel):
    conversation_id: str
    titre: Optional[str] = None
    message_count: int
    created_at: float
    updated_at: float

class ConversationMessageResponse(BaseModel):
    message_id: Optional[str] = None
    role: str
    content: str
    sources: List[SourceCitationResponse]
    created_at: float

class ConversationDetailResponse(BaseModel):
    conversation_id: str
    titre: Optional[str] = None
    messages: List[ConversationMessageResponse]


def get_store():
    """Conversation store dependency (Postgres)."""
    global _store

    if _store is None:
        _store = SqlConversationManager(SessionLocal)
    return _store


def get_pipeline() -> RAGPipeline:
    """Pipeline dependency wired to Postgres and the configured model providers."""
    global _pipeline

    if _pipeline is None:
        _pipeline = RAGPipeline(
            store=get_store(),
            embedder=EmbeddingService.from_settings(settings),
            vector_search=ReportChunkSearch(SessionLocal),
            llm=get_llm_client(settings),
            settings=settings
        )
    return _pipeline


def error_response(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": message})


@app.exception_handler(InputError)
async def input_error_handler(request, exc: InputError):
    return error_response(400, str(exc))

@app.exception_handler(NotFound)
async def not_found_handler(request, exc: NotFound):
    return error_response(404, str(exc))

@app.exception_handler(UpstreamError)
async def upstream_error_handler(request, exc: UpstreamError):
    logger.error(f"Upstream failure: {exc}", exc_info=exc)
    return error_response(502, GENERIC_ERROR)


@app.on_event("startup")
async def startup_event():
    logger.info("Starting CI Report Assistant API")
    logger.info(f"LLM provider: {settings.llm_provider}, embeddings: {settings.embedding_provider}")

@app.on_event("shutdown")
async def shutdown_event():
    logger.info("Shutting down CI Report Assistant API")

@app.get("/health")
async def health_check():
    """Health check endpoint"""
    return {"status": "healthy", "message": "CI Report Assistant API is running"}


@app.post("/query", response_model=QueryResponse)
def query(request: QueryRequest, pipeline: RAGPipeline = Depends(get_pipeline)):
    """Answer a question over the user's reports, continuing or starting a conversation"""
    query_start = time.time()
    try:
        result = pipeline.run(request.question, request.user_id, request.conversation_id)
    except (InputError, NotFound, UpstreamError):
        raise
    except Exception as e:
        logger.error(f"Error answering question: {str(e)}", exc_info=True)
        return error_response(500, GENERIC_ERROR)

    query_time = (time.time() - query_start) * 1000
    logger.info(f"Answered with {len(result.sources)} sources in {query_time:.0f}ms")

    return QueryResponse(
        answer=result.answer,
        conversation_id=result.conversation_id,
        sources=[SourceCitationResponse(**s.to_dict()) for s in result.sources],
        has_history=result.has_history
    )


@app.get("/conversations", response_model=List[ConversationSummaryResponse])
def list_conversations(
    user_id: str,
    limit: int = Query(50, ge=1, le=200),
    store=Depends(get_store)
):
    """Conversations of a user, most recent activity first"""
    return store.list_conversations(user_id, limit)


@app.get("/conversations/{conversation_id}", response_model=ConversationDetailResponse)
def get_conversation_detail(
    conversation_id: str,
    user_id: str,
    limit: int = Query(100, ge=1, le=500),
    store=Depends(get_store)
):
    """Messages of one conversation, oldest first, with the sources each answer cited"""
    conversation = store.get_conversation(conversation_id, user_id=user_id)
    if conversation is None:
        raise NotFound("Conversation not found")

    messages = store.get_history(conversation_id, limit)
    return ConversationDetailResponse(
        conversation_id=conversation_id,
        titre=conversation.titre,
        messages=[
            ConversationMessageResponse(
                message_id=m.message_id,
                role=m.role,
                content=m.content,
                sources=m.metadata.get("sources", []),
                created_at=m.created_at
            )
            for m in messages
        ]
    )


@app.get("/")
async def root():
    return {"message": "Welcome to the CI Report Assistant API", "docs": "/docs"}
