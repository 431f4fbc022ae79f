"""
Create the pgvector extension and the assistant's tables for local development.

    python -m ci_rag.db.init_db

Tenants (clients) and reports (rapports / rapport_chunks) are written by
other systems; this only makes sure the tables exist.
"""
from sqlalchemy import text

from .database import engine, Base
from .models import Client, Report, ReportChunk, ConversationRow, MessageRow  # noqa: F401 (register tables)


def init_db():
    """Enable pgvector, then create every mapped table and its indexes."""
    with engine.connect() as conn:
        conn.execute(text("CREATE EXTENSION IF NOT EXISTS vector"))
        conn.commit()
    print("✓ pgvector extension enabled")

    Base.metadata.create_all(bind=engine)
    for table in Base.metadata.sorted_tables:
        print(f"  - {table.name} ({len(table.indexes)} indexes)")
    print("✓ Tables ready")


if __name__ == "__main__":
    init_db()
