"""
LLM-based answer generation for the CI report assistant.

The prompt regime is chosen once per turn:
- FreshContext: passages were selected -> cite them with [n]
- FollowUp: no passages but history exists -> answer from history, no markers
- NoContext: nothing at all -> best-effort answer, no markers
"""
from dataclasses import dataclass
from typing import List, Optional, Union
import time

from ci_rag.models import SearchResult, Message
from ci_rag.rag.date_matching import format_report_date
from ci_rag.logging_config import get_logger

logger = get_logger(__name__)

ROLE_CONTEXT = "You are an assistant specialised in analysing competitive and technology intelligence reports."

FRESH_CONTEXT_SYSTEM_PROMPT = """{role}

**Information sources**:
You have {count} pre-selected sources. Use ONLY the sources that are relevant to answer the question.

**CRITICAL citation instructions**:
- MANDATORY: cite the relevant sources with numbered references [1], [2], etc.
- Each source in the context is marked **SOURCE [X]**
- Place the [number] reference IMMEDIATELY after each piece of information it supports
- Example: "OpenAI improved ChatGPT [1]" or "Companies are investing heavily [2]"
- NEVER write "according to the report" or "(Report, November 18)" - ALWAYS use [1], [2], [3], etc.
- Only use the numbers listed below; never invent a reference
- Use ONLY the sources that actually answer the question
- If a single source fully answers the question, use only that one

**Other instructions**:
- Answer clearly, in a structured and professional way
- Use bullet points for lists
- Be concise but complete
- If you cannot answer from the available information, say so clearly

**Sources available for citation**:
{legend}"""

FOLLOW_UP_SYSTEM_PROMPT = """{role}

**Context**:
This question is a follow-up in an ongoing conversation. No new source is available.

**Instructions**:
- Base your answer on the conversation history above
- DO NOT include any reference such as [1], [2], etc. because there are no new sources
- Answer based on what you already explained
- Clarify, detail or deepen your previous answers as the question requires
- Answer clearly, in a structured and professional way
- Use bullet points for lists
- Be concise but complete"""

NO_CONTEXT_SYSTEM_PROMPT = """{role}

**Context**:
No relevant excerpt was found in the intelligence reports for this question.

**Instructions**:
- Say clearly that the reports contain no matching information
- You may add general, clearly hedged guidance, but do not present it as coming from the reports
- DO NOT include any reference such as [1], [2], etc.
- Be concise"""


@dataclass(frozen=True)
class FreshContext:
    passages: List[SearchResult]


@dataclass(frozen=True)
class FollowUp:
    pass


@dataclass(frozen=True)
class NoContext:
    pass


PromptRegime = Union[FreshContext, FollowUp, NoContext]


def select_regime(passages: List[SearchResult], history: Optional[List[Message]]) -> PromptRegime:
    if passages:
        return FreshContext(list(passages))
    if history:
        return FollowUp()
    return NoContext()


def format_passage(number: int, chunk: SearchResult) -> str:
    return f"**SOURCE [{number}]** - {chunk.titre} ({format_report_date(chunk.date_rapport)})\n{chunk.chunk_text}"


def system_prompt_for(regime: PromptRegime) -> str:
    if isinstance(regime, FreshContext):
        legend = "\n".join(
            f"[{idx}] {chunk.titre} ({format_report_date(chunk.date_rapport)})"
            for idx, chunk in enumerate(regime.passages, 1)
        )
        return FRESH_CONTEXT_SYSTEM_PROMPT.format(role=ROLE_CONTEXT, count=len(regime.passages), legend=legend)
    if isinstance(regime, FollowUp):
        return FOLLOW_UP_SYSTEM_PROMPT.format(role=ROLE_CONTEXT)
    return NO_CONTEXT_SYSTEM_PROMPT.format(role=ROLE_CONTEXT)


def user_turn_for(regime: PromptRegime, question: str) -> str:
    if isinstance(regime, FreshContext):
        context = "\n\n---\n\n".join(format_passage(idx, chunk) for idx, chunk in enumerate(regime.passages, 1))
        return f"Context (excerpts from intelligence reports):\n\n{context}\n\n---\n\nQuestion: {question}"
    if isinstance(regime, FollowUp):
        return (
            f"Question: {question}\n\n(Note: this looks like a follow-up question. No new context was found "
            f"in the reports. Refer to our conversation history above to answer.)"
        )
    return f"Question: {question}\n\n(Note: no relevant context was found in the reports for this question.)"


def build_messages(question: str, regime: PromptRegime, conversation_history: Optional[List[Message]]) -> List[dict]:
    """System prompt, then the role-tagged history, then the current turn."""
    messages = [{'role': 'system', 'content': system_prompt_for(regime)}]

    # Only role/content go to the model; metadata stays in the store
    for msg in conversation_history or []:
        messages.append({'role': msg.role, 'content': msg.content})

    messages.append({'role': 'user', 'content': user_turn_for(regime, question)})
    return messages


def generate_answer(
    question: str,
    regime: PromptRegime,
    llm,
    conversation_history: Optional[List[Message]] = None,
    timeout: Optional[float] = None
) -> str:
    """
    Generate the answer text for one turn (retrieval and filtering done by caller).

    Raises:
        UpstreamError: the generation call failed
    """
    messages = build_messages(question, regime, conversation_history)
    logger.debug(f"Messages:\n{messages}\n")
    logger.info(f"Generating answer ({type(regime).__name__}, {len(conversation_history or [])} history messages)")

    generation_start = time.time()
    answer = llm.chat(messages, temperature=0.7, max_tokens=1500, timeout=timeout)
    generation_time = (time.time() - generation_start) * 1000
    logger.info(f"LLM generation time: {generation_time:.0f}ms")

    return answer
