"""
Citation reconciliation for the CI report assistant.

The model is shown passages numbered [1]..[N]; the answer text decides which of
them become returned sources. Numbers are kept as the model wrote them, never
renumbered, so [2] in the answer always points at source_number 2.
"""
import re
from typing import List, Set

from ci_rag.models import SearchResult, SourceCitation


def find_cited_numbers(answer: str, count: int) -> Set[int]:
    """
    Distinct n in 1..count for which the literal marker [n] appears in answer.

    Pure function of (answer, count): repeated markers count once, numbers
    outside the range (including [0]) are ignored.
    """
    if not answer or count <= 0:
        return set()

    found = {int(n) for n in re.findall(r"\[(\d+)\]", answer)}
    return {n for n in found if 1 <= n <= count}


def build_source_citations(answer: str, passages: List[SearchResult]) -> List[SourceCitation]:
    """
    SourceCitation for every passage the answer cites, ordered by source_number.

    Passages shown to the model but never cited are dropped.
    """
    cited = find_cited_numbers(answer, len(passages))

    citations = []
    for number in sorted(cited):
        chunk = passages[number - 1]
        citations.append(SourceCitation(
            source_number=number,
            titre=chunk.titre,
            date=chunk.date_rapport,
            excerpt=chunk.chunk_text,
            rapport_id=chunk.rapport_id,
            url_pdf=chunk.url_pdf or None,
            similarity=chunk.similarity
        ))
    return citations


def drop_unknown_markers(answer: str, count: int) -> str:
    """Remove [n] markers that do not refer to a passage shown to the model (n outside 1..count)."""
    def keep_if_known(match):
        return match.group(0) if 1 <= int(match.group(2)) <= count else ""

    return re.sub(r"(\s?)\[(\d+)\]", keep_if_known, answer)
