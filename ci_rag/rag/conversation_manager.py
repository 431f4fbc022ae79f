"""
Conversation store for the RAG assistant.

Two interchangeable backends with the same methods:
- ConversationManager: in-memory, for local runs and tests
- SqlConversationManager: Postgres tables conversations / conversation_messages

Messages are append-only and ordered by created_at. A turn (user question +
assistant answer) is always written by append_turn in one step, so a
conversation never holds a question without its answer.
"""
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Dict, List, Optional
import threading
import time
import uuid

from sqlalchemy import select, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from ci_rag.db.models import Client, ConversationRow, MessageRow
from ci_rag.errors import NotFound, UpstreamError
from ci_rag.models import Conversation, Message
from ci_rag.logging_config import get_logger

logger = get_logger(__name__)

TITLE_MAX_CHARS = 100

ADVISORY_LOCK_SQL = text("select pg_try_advisory_xact_lock(hashtext(:key))")


def derive_title(question: str) -> str:
    """Conversation title from its first question: single line, at most 100 chars."""
    return " ".join(question.split())[:TITLE_MAX_CHARS]


def summarize(conversation: Conversation) -> dict:
    return {
        "conversation_id": conversation.conversation_id,
        "titre": conversation.titre,
        "message_count": conversation.message_count,
        "created_at": conversation.created_at,
        "updated_at": conversation.updated_at
    }


class ConversationManager:
    """
    Manages conversation state in-memory.

    Handles:
    - Tenant lookup (user_id -> client_id)
    - Conversation creation and retrieval
    - Bounded, oldest-first history reads
    - Atomic question/answer appends
    """

    def __init__(self, clients: Optional[Dict[str, str]] = None):
        """Initialize with an optional user_id -> client_id mapping."""
        self.clients: Dict[str, str] = dict(clients or {})
        self.conversations: Dict[str, Conversation] = {}
        self._lock = threading.Lock()


    def register_client(self, user_id: str, client_id: Optional[str] = None) -> str:
        """Attach a tenant to a user and return its id."""
        c_id = client_id or str(uuid.uuid4())
        self.clients[user_id] = c_id
        return c_id


    def get_client_id(self, user_id: str) -> Optional[str]:
        return self.clients.get(user_id)


    def create_conversation(self, user_id: str, client_id: str, conversation_id: Optional[str] = None) -> str:
        """Create a new conversation and return its UUID. Optionally accept client-provided ID"""
        c_id = conversation_id or str(uuid.uuid4())

        with self._lock:
            if c_id in self.conversations:
                raise ValueError(f"Conversation {c_id} already exists")
            self.conversations[c_id] = Conversation(conversation_id=c_id, user_id=user_id, client_id=client_id)

        return c_id


    def get_conversation(self, conversation_id: str, user_id: Optional[str] = None) -> Optional[Conversation]:
        """Retrieve conversation by ID. Returns None if not found or owned by another user."""
        c = self.conversations.get(conversation_id)
        if c is None:
            return None

        if user_id is not None and c.user_id != user_id:
            return None

        return c


    def get_history(self, conversation_id: str, limit: int = 10) -> List[Message]:
        """Last `limit` messages, oldest first. Empty list if conversation not found."""
        c = self.conversations.get(conversation_id)
        if c is None or limit <= 0:
            return []

        with self._lock:
            ordered = sorted(c.messages, key=lambda m: m.created_at)
        return [Message(m.role, m.content, dict(m.metadata), m.message_id, m.created_at) for m in ordered[-limit:]]


    @contextmanager
    def turn_lock(self, conversation_id: str, timeout: Optional[float] = None):
        """Nothing to do: a single process already serializes turns with ConversationLocks."""
        yield


    def append_turn(self, conversation_id: str, user_message: Message, assistant_message: Message,
                    new_conversation: Optional[Conversation] = None) -> None:
        """
        Append a question and its answer together, updating count, activity and title.

        When new_conversation is given, the conversation is created as part of the same step.
        """
        if new_conversation is not None:
            self.create_conversation(new_conversation.user_id, new_conversation.client_id, conversation_id)

        with self._lock:
            c = self.conversations.get(conversation_id)
            if c is None:
                raise NotFound(f"Conversation {conversation_id} not found")

            for message in (user_message, assistant_message):
                if message.message_id is None:
                    message.message_id = str(uuid.uuid4())
                c.messages.append(message)

            if c.titre is None:
                c.titre = derive_title(user_message.content)
            c.updated_at = max(time.time(), assistant_message.created_at)


    def list_conversations(self, user_id: str, limit: int = 50) -> List[dict]:
        """Get conversation summaries for a user, most recent activity first."""
        summaries = [summarize(c) for c in self.conversations.values() if c.user_id == user_id]
        summaries.sort(key=lambda x: x["updated_at"], reverse=True)
        return summaries[:limit]


def _to_datetime(ts: float) -> datetime:
    return datetime.fromtimestamp(ts, tz=timezone.utc)


def _row_to_conversation(row: ConversationRow) -> Conversation:
    return Conversation(
        conversation_id=str(row.id),
        user_id=row.user_id,
        client_id=str(row.client_id),
        titre=row.titre,
        created_at=row.created_at.timestamp(),
        updated_at=row.updated_at.timestamp()
    )


class SqlConversationManager:
    """
    Conversation store backed by Postgres.

    Every method wraps database failures in UpstreamError.
    """

    def __init__(self, session_factory: sessionmaker, lock_poll_seconds: float = 0.05):
        self.session_factory = session_factory
        self.lock_poll_seconds = lock_poll_seconds


    @contextmanager
    def turn_lock(self, conversation_id: str, timeout: Optional[float] = None):
        """
        Hold a Postgres advisory lock on the conversation for a whole turn.

        Covers the history read through the append, so workers in other
        processes cannot interleave turns on the same conversation. The lock
        is transaction scoped and is released when the session closes.

        Raises:
            UpstreamError: lock not obtained within timeout, or database failure
        """
        session = self.session_factory()
        try:
            started = time.time()
            try:
                while not session.execute(ADVISORY_LOCK_SQL, {"key": f"conversation:{conversation_id}"}).scalar():
                    if timeout is not None and time.time() - started >= timeout:
                        raise UpstreamError(f"Conversation {conversation_id} is busy")
                    time.sleep(self.lock_poll_seconds)
            except SQLAlchemyError as e:
                raise UpstreamError(f"Conversation lock failed: {e}") from e
            logger.debug(f"Advisory lock held for conversation {conversation_id}")
            yield
        finally:
            session.close()


    def get_client_id(self, user_id: str) -> Optional[str]:
        try:
            with self.session_factory() as session:
                client_id = session.execute(
                    select(Client.id).where(Client.user_id == user_id)
                ).scalar_one_or_none()
        except SQLAlchemyError as e:
            raise UpstreamError(f"Tenant lookup failed: {e}") from e

        return str(client_id) if client_id is not None else None


    def get_conversation(self, conversation_id: str, user_id: Optional[str] = None) -> Optional[Conversation]:
        """Conversation header (messages not loaded). None if missing or owned by another user."""
        try:
            uuid.UUID(conversation_id)
        except ValueError:
            return None

        try:
            with self.session_factory() as session:
                row = session.get(ConversationRow, conversation_id)
        except SQLAlchemyError as e:
            raise UpstreamError(f"Conversation lookup failed: {e}") from e

        if row is None or (user_id is not None and row.user_id != user_id):
            return None
        return _row_to_conversation(row)


    def get_history(self, conversation_id: str, limit: int = 10) -> List[Message]:
        """Last `limit` messages, oldest first."""
        stmt = (
            select(MessageRow)
            .where(MessageRow.conversation_id == conversation_id)
            .order_by(MessageRow.created_at.desc())
            .limit(limit)
        )
        try:
            with self.session_factory() as session:
                rows = session.execute(stmt).scalars().all()
        except SQLAlchemyError as e:
            raise UpstreamError(f"History read failed: {e}") from e

        return [
            Message(
                role=row.role,
                content=row.content,
                metadata=dict(row.message_metadata or {}),
                message_id=str(row.id),
                created_at=row.created_at.timestamp()
            )
            for row in reversed(rows)
        ]


    def append_turn(self, conversation_id: str, user_message: Message, assistant_message: Message,
                    new_conversation: Optional[Conversation] = None) -> None:
        """
        Insert both messages and update the conversation header in one transaction.

        When new_conversation is given its row is inserted in the same
        transaction. Otherwise the existing row is locked (SELECT ... FOR UPDATE)
        so concurrent appends from other processes queue behind this one.
        """
        try:
            with self.session_factory() as session, session.begin():
                if new_conversation is not None:
                    session.add(ConversationRow(
                        id=conversation_id,
                        user_id=new_conversation.user_id,
                        client_id=new_conversation.client_id,
                        titre=None,  # set below from the first question
                        message_count=0,
                        created_at=_to_datetime(user_message.created_at),
                        updated_at=_to_datetime(user_message.created_at)
                    ))
                    session.flush()
                    logger.info(f"New conversation created: {conversation_id}")

                conversation = session.execute(
                    select(ConversationRow)
                    .where(ConversationRow.id == conversation_id)
                    .with_for_update()
                ).scalar_one_or_none()
                if conversation is None:
                    raise NotFound(f"Conversation {conversation_id} not found")

                for message in (user_message, assistant_message):
                    session.add(MessageRow(
                        id=message.message_id or str(uuid.uuid4()),
                        conversation_id=conversation_id,
                        role=message.role,
                        content=message.content,
                        message_metadata=message.metadata,
                        created_at=_to_datetime(message.created_at)
                    ))

                conversation.message_count = (conversation.message_count or 0) + 2
                conversation.updated_at = _to_datetime(assistant_message.created_at)
                if conversation.titre is None:
                    conversation.titre = derive_title(user_message.content)
        except SQLAlchemyError as e:
            raise UpstreamError(f"Saving messages failed: {e}") from e


    def list_conversations(self, user_id: str, limit: int = 50) -> List[dict]:
        stmt = (
            select(ConversationRow)
            .where(ConversationRow.user_id == user_id)
            .order_by(ConversationRow.updated_at.desc())
            .limit(limit)
        )
        try:
            with self.session_factory() as session:
                rows = session.execute(stmt).scalars().all()
        except SQLAlchemyError as e:
            raise UpstreamError(f"Listing conversations failed: {e}") from e

        summaries = []
        for row in rows:
            summary = summarize(_row_to_conversation(row))
            summary["message_count"] = row.message_count
            summaries.append(summary)
        return summaries
