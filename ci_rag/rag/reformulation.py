"""
Follow-up question reformulation.

Rewrites "and for the 17th?" into a standalone question using recent turns,
so retrieval embeds something meaningful. Failure is never fatal: the
original question is used instead.
"""
from typing import List, Optional

from ci_rag.errors import UpstreamError
from ci_rag.models import Message
from ci_rag.logging_config import get_logger

logger = get_logger(__name__)

# 3 user/assistant pairs
RECENT_MESSAGES = 6

REFORMULATION_SYSTEM_PROMPT = "You rewrite questions so they are standalone and complete."

REFORMULATION_PROMPT_TEMPLATE = """You rewrite questions using the context of a conversation.

Conversation history:
{history}

New user question: "{question}"

Instructions:
1. If the question refers to something in the history (e.g. "and for the 17th?", "expand on point 2"), rewrite it so it is standalone and complete, reusing the entities, dates and topics from the history
2. If the question is already complete and standalone, return it unchanged
3. Keep the same meaning and intent
4. Return ONLY the rewritten question, with no extra text

Examples:
- History: "user: What were the trends on November 14?" -> Question: "and for the 17th?" -> Rewrite: "What were the latest trends on November 17?"
- Complete question: "What is new in AI?" -> Rewrite: "What is new in AI?\""""


def build_reformulation_messages(question: str, history: List[Message]) -> List[dict]:
    recent = history[-RECENT_MESSAGES:]
    history_text = "\n".join(f"{msg.role}: {msg.content}" for msg in recent)
    prompt = REFORMULATION_PROMPT_TEMPLATE.format(history=history_text, question=question)
    return [
        {'role': 'system', 'content': REFORMULATION_SYSTEM_PROMPT},
        {'role': 'user', 'content': prompt}
    ]


QUOTE_PAIRS = {'"': '"', "'": "'", "«": "»", "“": "”"}


def clean_reformulation(text: str) -> str:
    """Strip whitespace and the quotes models like to wrap the question in."""
    cleaned = (text or "").strip()
    if len(cleaned) >= 2 and QUOTE_PAIRS.get(cleaned[0]) == cleaned[-1]:
        cleaned = cleaned[1:-1].strip()
    return cleaned


def reformulate_question(question: str, history: List[Message], llm, timeout: Optional[float] = None) -> str:
    """Standalone version of question given history; the question itself if there is no history or the call fails."""
    if not history:
        return question

    logger.info("Reformulating question with conversation context")
    messages = build_reformulation_messages(question, history)

    try:
        raw = llm.chat(messages, temperature=0.3, max_tokens=150, timeout=timeout)
    except UpstreamError as e:
        logger.warning(f"Reformulation failed, using original question: {e}")
        return question

    reformulated = clean_reformulation(raw)
    if not reformulated:
        logger.warning("Reformulation returned nothing, using original question")
        return question

    logger.info(f"Reformulated question: \"{reformulated}\"")
    return reformulated
