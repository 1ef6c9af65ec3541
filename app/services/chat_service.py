"""Chat service layer for the assistant conversation.

Handles:
- Conversation lookup/creation (one remote thread per user)
- Message storage (user + assistant)
- Conversation history retrieval
- Turn orchestration through the RunDriver
"""
import asyncio
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import AsyncIterator, Dict, Optional

from sqlalchemy.exc import IntegrityError
from sqlmodel import select
from sqlmodel.ext.asyncio.session import AsyncSession

from app.config import settings
from app.models.conversation import Conversation, Message, MessageRole, utcnow
from app.services.assistant_client import AssistantClient
from app.services.run_driver import RunDriver
from app.services.stream_reducer import StreamSink
from app.tools.registry import ToolInvoker, ToolRegistry, build_default_registry

logger = logging.getLogger(__name__)


@dataclass
class TurnResult:
    message_id: int
    content: str
    role: MessageRole = MessageRole.ASSISTANT


@dataclass
class _UserGate:
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    holders: int = 0


class ChatService:
    """Service layer for chat operations."""

    def __init__(
        self,
        assistant: AssistantClient,
        registry: Optional[ToolRegistry] = None,
        max_tool_cycles: Optional[int] = None,
    ):
        """Initialize chat service."""
        self.assistant = assistant
        self.registry = registry or build_default_registry()
        self.max_tool_cycles = (
            settings.MAX_TOOL_CYCLES if max_tool_cycles is None else max_tool_cycles
        )
        # One gate per user so turns on the same thread never overlap.
        # An entry lives only while a turn holds or waits on it.
        self._user_locks: Dict[str, _UserGate] = {}

    @asynccontextmanager
    async def _user_turn(self, user_id: str) -> AsyncIterator[None]:
        gate = self._user_locks.get(user_id)
        if gate is None:
            gate = self._user_locks[user_id] = _UserGate()
        gate.holders += 1
        try:
            async with gate.lock:
                yield
        finally:
            gate.holders -= 1
            if gate.holders == 0:
                del self._user_locks[user_id]

    async def _find_conversation(self, session: AsyncSession, user_id: str) -> Optional[Conversation]:
        statement = select(Conversation).where(Conversation.user_id == user_id)
        result = await session.exec(statement)
        return result.first()

    async def get_or_create_conversation(self, session: AsyncSession, user_id: str) -> Conversation:
        """
        Get the user's conversation, creating it and its remote thread if absent.

        Args:
            session: Database session
            user_id: Owner of the conversation

        Returns:
            Conversation instance

        Raises:
            TransportError: If the remote thread cannot be created
        """
        conversation = await self._find_conversation(session, user_id)
        if conversation:
            logger.info(f"Found existing chat for user: {user_id} with chatId: {conversation.id}")
            return conversation

        logger.info(f"No chat found for user: {user_id}. Creating new chat.")
        thread_id = await self.assistant.create_thread()

        conversation = Conversation(user_id=user_id, thread_id=thread_id)
        session.add(conversation)
        try:
            await session.commit()
        except IntegrityError:
            # Another request created the conversation first; keep the winner's
            await session.rollback()
            logger.warning(
                f"Conversation for user {user_id} created concurrently; "
                f"abandoning thread {thread_id}"
            )
            existing = await self._find_conversation(session, user_id)
            if existing is None:
                raise
            return existing

        await session.refresh(conversation)
        logger.info(f"Created new chat for user: {user_id} with chatId: {conversation.id}")
        return conversation

    async def store_message(
        self,
        session: AsyncSession,
        conversation_id: int,
        role: MessageRole,
        content: str,
    ) -> Message:
        """
        Store message in database.

        Args:
            session: Database session
            conversation_id: Conversation ID
            role: Message role
            content: Message content

        Returns:
            Stored Message instance
        """
        message = Message(
            conversation_id=conversation_id,
            role=role,
            content=content,
        )
        session.add(message)
        await session.commit()
        await session.refresh(message)
        return message

    async def get_conversation_history(self, session: AsyncSession, conversation_id: int) -> list[Message]:
        """
        Get all messages in conversation.

        Returns:
            List of Message instances in insertion order
        """
        statement = (
            select(Message)
            .where(Message.conversation_id == conversation_id)
            .order_by(Message.created_at, Message.id)
        )
        result = await session.exec(statement)
        return list(result.all())

    async def get_chat(self, session: AsyncSession, user_id: str) -> tuple[Conversation, list[Message]]:
        """Conversation and ordered messages for a user."""
        conversation = await self.get_or_create_conversation(session, user_id)
        messages = await self.get_conversation_history(session, conversation.id)
        if not messages:
            logger.warning(f"No messages found for user: {user_id}")
        else:
            logger.info(f"Found {len(messages)} messages for user: {user_id}")
        return conversation, messages

    async def handle_message(
        self,
        session: AsyncSession,
        user_id: str,
        content: str,
        stream_sink: Optional[StreamSink] = None,
    ) -> TurnResult:
        """
        Run one conversation turn.

        Flow:
        1. Get or create conversation
        2. Store user message
        3. Drive the assistant run (tools executed as requested)
        4. Bump conversation updated_at
        5. Store assistant reply
        6. Return it

        If step 3 fails the user message stays stored and the error propagates.

        Args:
            session: Database session
            user_id: Calling user
            content: User message content
            stream_sink: Optional sink(text, finished) for streaming mode

        Returns:
            TurnResult for the stored assistant message
        """
        async with self._user_turn(user_id):
            conversation = await self.get_or_create_conversation(session, user_id)

            user_msg = await self.store_message(
                session, conversation.id, role=MessageRole.USER, content=content
            )

            driver = RunDriver(
                self.assistant,
                ToolInvoker(self.registry, session),
                max_tool_cycles=self.max_tool_cycles,
            )
            reply = await driver.drive(conversation.thread_id, content, user_id, stream_sink)

            conversation.updated_at = utcnow()
            session.add(conversation)
            await session.commit()

            assistant_msg = await self.store_message(
                session, conversation.id, role=MessageRole.ASSISTANT, content=reply
            )

            logger.info(
                f"Chat message processed: user={user_id}, conversation={conversation.id}, "
                f"message_id={user_msg.id}, response_id={assistant_msg.id}"
            )
            return TurnResult(message_id=assistant_msg.id, content=assistant_msg.content)
