"""
Vector similarity search over a tenant's report chunks.

Recall is wide (low similarity floor, many candidates); the relevance
filter makes the final selection.
"""
from typing import List, Optional
import time

from sqlalchemy import text
from sqlalchemy.orm import sessionmaker

from ci_rag.errors import UpstreamError
from ci_rag.models import SearchResult
from ci_rag.logging_config import get_logger

logger = get_logger(__name__)


SEARCH_SQL = text(
    """
select
chk.id as chunk_id
, chk.rapport_id
, chk.chunk_text
, chk.metadata
, 1 - (chk.embedding <=> cast(:query_vector as vector)) as similarity
, rap.titre as rapport_titre
, rap.date_generation
, rap.pdf_url as rapport_pdf_url

from rapport_chunks chk
left join rapports rap
  on chk.rapport_id = rap.id
where chk.client_id = cast(:client_id as uuid)
  and chk.embedding is not null
  and 1 - (chk.embedding <=> cast(:query_vector as vector)) >= :match_threshold
order by chk.embedding <=> cast(:query_vector as vector) asc
limit :match_count
"""
)


def row_to_search_result(row) -> SearchResult:
    """Build a SearchResult, preferring report columns over the chunk's metadata copy."""
    metadata = dict(row.metadata or {})  # handles None metadata case

    date_rapport = row.date_generation.isoformat() if row.date_generation else None
    date_rapport = date_rapport or metadata.get("date_rapport") or metadata.get("date_generation")

    return SearchResult(
        chunk_id=str(row.chunk_id),
        rapport_id=str(row.rapport_id),
        chunk_text=row.chunk_text,
        similarity=float(row.similarity),
        titre=row.rapport_titre or metadata.get("titre") or "Untitled",
        date_rapport=date_rapport,
        url_pdf=row.rapport_pdf_url or metadata.get("pdf_url") or None,
        metadata=metadata
    )


class ReportChunkSearch:
    """Runs the similarity query against rapport_chunks, scoped to one tenant."""

    def __init__(self, session_factory: sessionmaker):
        self.session_factory = session_factory

    def search_report_chunks(
        self,
        query_embedding: List[float],
        client_id: str,
        match_threshold: float = 0.2,
        match_count: int = 30,
        timeout: Optional[float] = None
    ) -> List[SearchResult]:
        """
        Return up to match_count chunks of the tenant with similarity >= match_threshold.

        Args:
            query_embedding: Embedded question
            client_id: Tenant scope
            match_threshold: Similarity floor in [0, 1]
            match_count: Maximum number of candidates
            timeout: Seconds allowed for the statement (Postgres statement_timeout)

        Returns:
            List of SearchResult objects ordered by descending similarity
        """
        search_start = time.time()
        try:
            with self.session_factory() as session:
                if timeout is not None:
                    session.execute(text(f"SET LOCAL statement_timeout = {max(1, int(timeout * 1000))}"))
                rows = session.execute(SEARCH_SQL, {
                    'query_vector': str(list(query_embedding)),
                    'client_id': client_id,
                    'match_threshold': match_threshold,
                    'match_count': match_count
                }).fetchall()
        except Exception as e:
            logger.error(f"Vector search failed: {e}", exc_info=True)
            raise UpstreamError(f"Vector search failed: {e}") from e

        search_time = (time.time() - search_start) * 1000
        logger.info(f"  Vector search time: {search_time:.0f}ms")

        results = [row_to_search_result(row) for row in rows]

        logger.info(f"Found {len(results)} candidate chunks")
        for i, result in enumerate(results, 1):
            logger.debug(f"  {i}. Score: {result.similarity:.3f} - {result.titre} - Date: {result.date_rapport}")

        return results
