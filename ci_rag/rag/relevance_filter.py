"""
LLM relevance filter: narrows the wide vector-search recall to at most 5 passages.

Two modes, in strict precedence:
1. Date-gated: the question names a calendar date -> only passages whose
   report date matches exactly; no match means no sources.
2. Thematic: no date named -> topical relevance, best first.

The model's answer is turned into a FilterOutcome (Selected | Empty |
Unparseable) and resolve_selection is the single place that maps an outcome
to the passages handed to generation.
"""
from typing import List, Optional
import json
import re

from ci_rag.errors import UpstreamError
from ci_rag.models import SearchResult, FilterOutcome, Selected, Empty, Unparseable
from ci_rag.rag.date_matching import extract_date_mentions, format_report_date, matches_any
from ci_rag.logging_config import get_logger

logger = get_logger(__name__)

MAX_SOURCES = 5
EXCERPT_CHARS = 300

FILTER_SYSTEM_PROMPT = "You are an expert assistant who evaluates how relevant documents are to a question. You answer only in JSON."

FILTER_PROMPT_TEMPLATE = """You evaluate whether report excerpts are relevant to a user's question.

User question: "{question}"

Available sources:
{sources}

CRITICAL instructions:
1. If the question names a specific date (e.g. "November 14", "14 novembre", "14/11"), you MUST select ONLY the sources whose date matches that date EXACTLY
   - "November 14" -> select ONLY sources dated 14/11 (also written "14 novembre" or "2025-11-14")
   - "November 17" -> select ONLY sources dated 17/11
   - If NO source matches the requested date, return an empty array []
2. If the question does NOT name a specific date, judge the thematic relevance of the content
3. Return ONLY a JSON array with the indices of the relevant sources (maximum {max_sources} sources)
4. Order them by relevance (most relevant first)

Response format (JSON only, no extra text):
{{"relevant_indices": [2, 5, 1]}}"""

FENCE_PATTERN = re.compile(r"```(?:json)?\s*", re.IGNORECASE)


def format_candidates(candidates: List[SearchResult]) -> str:
    """Index, title, dd/mm/yyyy date and the first 300 characters of each candidate."""
    blocks = []
    for idx, chunk in enumerate(candidates):
        excerpt = chunk.chunk_text[:EXCERPT_CHARS]
        if len(chunk.chunk_text) > EXCERPT_CHARS:
            excerpt += "..."
        blocks.append(
            f"[{idx}] Title: {chunk.titre} | Date: {format_report_date(chunk.date_rapport)}\n"
            f"Excerpt: {excerpt}"
        )
    return "\n\n".join(blocks)


def build_filter_messages(question: str, candidates: List[SearchResult], max_sources: int = MAX_SOURCES) -> List[dict]:
    prompt = FILTER_PROMPT_TEMPLATE.format(
        question=question,
        sources=format_candidates(candidates),
        max_sources=max_sources
    )
    return [
        {'role': 'system', 'content': FILTER_SYSTEM_PROMPT},
        {'role': 'user', 'content': prompt}
    ]


def _load_json(text: str):
    """json.loads with fences stripped; falls back to the first {...} or [...] block in the text."""
    cleaned = FENCE_PATTERN.sub("", text).strip()
    try:
        return json.loads(cleaned)
    except json.JSONDecodeError:
        pass

    for opening, closing in (("{", "}"), ("[", "]")):
        start, end = cleaned.find(opening), cleaned.rfind(closing)
        if start != -1 and end > start:
            try:
                return json.loads(cleaned[start:end + 1])
            except json.JSONDecodeError:
                continue
    raise ValueError("no JSON value found")


def parse_filter_response(text: str, candidate_count: int) -> FilterOutcome:
    """
    Interpret the filter model's raw output.

    - {"relevant_indices": []} or [] -> Empty (a deliberate "nothing relevant")
    - valid indices -> Selected, in model order, duplicates and out-of-range dropped
    - anything else, including indices that are all invalid -> Unparseable
    """
    if text is None or not text.strip():
        return Unparseable("empty response")

    try:
        payload = _load_json(text)
    except ValueError as e:
        return Unparseable(f"invalid JSON: {e}")

    if isinstance(payload, dict):
        if "relevant_indices" not in payload:
            return Unparseable("missing relevant_indices")
        raw_indices = payload["relevant_indices"]
    else:
        raw_indices = payload

    if not isinstance(raw_indices, list):
        return Unparseable("relevant_indices is not a list")

    if not raw_indices:
        return Empty()

    indices = []
    for value in raw_indices:
        # bool is an int subclass; true/false are not indices
        if isinstance(value, bool):
            continue
        if isinstance(value, str) and value.strip().isdigit():
            value = int(value.strip())
        if isinstance(value, int) and 0 <= value < candidate_count and value not in indices:
            indices.append(value)

    if not indices:
        return Unparseable(f"no usable index in {raw_indices!r}")

    return Selected(indices)


def filter_candidates(question: str, candidates: List[SearchResult], llm, timeout: Optional[float] = None,
                      max_sources: int = MAX_SOURCES) -> FilterOutcome:
    """
    Ask the model which candidates answer the question.

    Never raises: a failed call is reported as Unparseable so the caller can
    fall back to similarity order.
    """
    if not candidates:
        return Empty()

    logger.info(f"Evaluating relevance of {len(candidates)} chunks with LLM")
    messages = build_filter_messages(question, candidates, max_sources)

    try:
        raw = llm.chat(messages, temperature=0.2, max_tokens=300, timeout=timeout)
    except UpstreamError as e:
        logger.warning(f"Relevance filter call failed, falling back to similarity: {e}")
        return Unparseable(f"call failed: {e}")

    logger.debug(f"LLM evaluation result: {raw}")
    outcome = parse_filter_response(raw, len(candidates))

    if isinstance(outcome, Unparseable):
        logger.warning(f"Could not parse relevance filter output ({outcome.reason}), falling back to similarity")
    elif isinstance(outcome, Empty):
        logger.info("LLM found no relevant sources")
    else:
        logger.info(f"LLM selected {len(outcome.indices)} relevant sources: {outcome.indices}")

    return outcome


def resolve_selection(outcome: FilterOutcome, candidates: List[SearchResult], question: str,
                      max_sources: int = MAX_SOURCES) -> List[SearchResult]:
    """
    Map a filter outcome to the passages shown to the answer generator.

    Selected -> those candidates in the model's order
    Empty -> no passages
    Unparseable -> top candidates by raw similarity

    When the question names a date, every branch keeps only passages whose
    report date matches it, so a wrong-date source can never be returned.
    """
    if isinstance(outcome, Empty):
        return []

    if isinstance(outcome, Selected):
        chosen = [candidates[i] for i in outcome.indices if 0 <= i < len(candidates)]
    elif isinstance(outcome, Unparseable):
        chosen = sorted(candidates, key=lambda c: c.similarity, reverse=True)
    else:
        raise TypeError(f"Unknown filter outcome: {outcome!r}")

    mentions = extract_date_mentions(question)
    if mentions:
        kept = [c for c in chosen if matches_any(mentions, c.date_rapport)]
        if len(kept) < len(chosen):
            logger.info(f"Date gate removed {len(chosen) - len(kept)} passages not dated {mentions}")
        chosen = kept

    return chosen[:max_sources]
