"""
Database models for the CI report assistant.

SCHEMA OVERVIEW
===============================================================================

TABLE: clients - Tenants (one per business account)
-------------------------------------------------------------------------------
id                UUID          PRIMARY KEY
user_id           VARCHAR       NOT NULL UNIQUE    Auth user owning the tenant
nom               TEXT
secteur           TEXT                             Business sector
created_at        TIMESTAMP     DEFAULT NOW()


TABLE: rapports - Archived competitive intelligence reports
-------------------------------------------------------------------------------
id                UUID          PRIMARY KEY
client_id         UUID          NOT NULL
titre             TEXT          NOT NULL
date_generation   DATE                             Report date
pdf_url           TEXT                             External link (nullable)
indexe_rag        BOOLEAN       DEFAULT FALSE      Set by the indexing function
created_at        TIMESTAMP     DEFAULT NOW()

INDEX: idx_rapports_client ON client_id


TABLE: rapport_chunks - Embedded report passages (written by the indexer, read here)
-------------------------------------------------------------------------------
id                UUID          PRIMARY KEY
rapport_id        UUID          NOT NULL
client_id         UUID          NOT NULL
chunk_index       INTEGER       NOT NULL           Order within report
chunk_text        TEXT          NOT NULL
metadata          JSONB                            titre, date_rapport, pdf_url, secteur, ...
embedding         VECTOR(EMBEDDING_DIM)
created_at        TIMESTAMP     DEFAULT NOW()

INDEX: idx_rapport_chunks_client ON client_id
INDEX: idx_rapport_chunks_embedding ON embedding USING hnsw (vector_cosine_ops)


TABLE: conversations - RAG chat conversations
-------------------------------------------------------------------------------
id                UUID          PRIMARY KEY
user_id           VARCHAR       NOT NULL
client_id         UUID          NOT NULL
titre             TEXT                             Derived from first question (nullable)
message_count     INTEGER       DEFAULT 0
created_at        TIMESTAMP     DEFAULT NOW()
updated_at        TIMESTAMP     DEFAULT NOW()      Last activity

INDEX: idx_conversations_user_updated ON (user_id, updated_at)


TABLE: conversation_messages - Append-only message log
-------------------------------------------------------------------------------
id                UUID          PRIMARY KEY
conversation_id   UUID          NOT NULL  FK -> conversations.id ON DELETE CASCADE
role              VARCHAR       NOT NULL           'user' | 'assistant'
content           TEXT          NOT NULL
metadata          JSONB                            chunk counts, model, sources, timestamp
created_at        TIMESTAMP     NOT NULL           Ordering key for history

INDEX: idx_messages_conversation_created ON (conversation_id, created_at)
"""
import uuid

from sqlalchemy import Column, Integer, String, Text, Date, DateTime, Boolean, ForeignKey, func, Index
from sqlalchemy.dialects.postgresql import JSONB, UUID
from pgvector.sqlalchemy import Vector

from ci_rag.config import get_settings
from .database import Base


def _uuid() -> str:
    return str(uuid.uuid4())


class Client(Base):
    """Tenant record. Each user owns at most one."""
    __tablename__ = "clients"

    id = Column(UUID(as_uuid=False), primary_key=True, default=_uuid)
    user_id = Column(String, nullable=False, unique=True)
    nom = Column(Text)
    secteur = Column(Text)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    def __repr__(self):
        return f"<Client(id={self.id}, user_id={self.user_id})>"


class Report(Base):
    """An archived report. Only its chunks are queried at answer time."""
    __tablename__ = "rapports"

    id = Column(UUID(as_uuid=False), primary_key=True, default=_uuid)
    client_id = Column(UUID(as_uuid=False), nullable=False)
    titre = Column(Text, nullable=False)
    date_generation = Column(Date)
    pdf_url = Column(Text)
    indexe_rag = Column(Boolean, default=False, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    __table_args__ = (
        Index('idx_rapports_client', 'client_id'),
    )

    def __repr__(self):
        return f"<Report(id={self.id}, titre={self.titre[:50]}...)>"


class ReportChunk(Base):
    """Embedded passage of a report, owned by the indexing function."""
    __tablename__ = "rapport_chunks"

    id = Column(UUID(as_uuid=False), primary_key=True, default=_uuid)
    rapport_id = Column(UUID(as_uuid=False), nullable=False)
    client_id = Column(UUID(as_uuid=False), nullable=False)
    chunk_index = Column(Integer, nullable=False)
    chunk_text = Column(Text, nullable=False)

    # Named chunk_metadata to avoid conflict with SQLAlchemy's reserved 'metadata' attribute
    chunk_metadata = Column("metadata", JSONB)

    embedding = Column(Vector(get_settings().embedding_dim))
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    __table_args__ = (
        Index('idx_rapport_chunks_client', 'client_id'),
        Index('idx_rapport_chunks_embedding', 'embedding', postgresql_using='hnsw',
              postgresql_with={'m': 16, 'ef_construction': 64},
              postgresql_ops={'embedding': 'vector_cosine_ops'}),
    )

    def __repr__(self):
        return f"<ReportChunk(id={self.id}, rapport_id={self.rapport_id}, index={self.chunk_index})>"


class ConversationRow(Base):
    """Conversation header. Message count and updated_at change on every turn."""
    __tablename__ = "conversations"

    id = Column(UUID(as_uuid=False), primary_key=True, default=_uuid)
    user_id = Column(String, nullable=False)
    client_id = Column(UUID(as_uuid=False), nullable=False)
    titre = Column(Text)
    message_count = Column(Integer, default=0, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    __table_args__ = (
        Index('idx_conversations_user_updated', 'user_id', 'updated_at'),
    )

    def __repr__(self):
        return f"<ConversationRow(id={self.id}, messages={self.message_count})>"


class MessageRow(Base):
    """Single conversation message. Never updated after insert."""
    __tablename__ = "conversation_messages"

    id = Column(UUID(as_uuid=False), primary_key=True, default=_uuid)
    conversation_id = Column(
        UUID(as_uuid=False),
        ForeignKey("conversations.id", ondelete="CASCADE"),
        nullable=False
    )
    role = Column(String, nullable=False)
    content = Column(Text, nullable=False)
    message_metadata = Column("metadata", JSONB)
    created_at = Column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        Index('idx_messages_conversation_created', 'conversation_id', 'created_at'),
    )

    def __repr__(self):
        return f"<MessageRow(id={self.id}, role={self.role})>"
