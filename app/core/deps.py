"""FastAPI dependencies."""
from typing import AsyncIterator, Optional

from fastapi import Depends
from sqlalchemy.ext.asyncio import async_sessionmaker
from sqlmodel.ext.asyncio.session import AsyncSession

from app import database
from app.services.assistant_client import get_assistant_client
from app.services.chat_service import ChatService

_chat_service: Optional[ChatService] = None


def get_session_factory() -> async_sessionmaker:
    return database.async_session_factory


async def get_db(
    session_factory: async_sessionmaker = Depends(get_session_factory),
) -> AsyncIterator[AsyncSession]:
    """Yield a database session for one request."""
    async with session_factory() as session:
        yield session


def get_chat_service() -> ChatService:
    """Shared chat service (stateless apart from per-user turn locks)."""
    global _chat_service
    if _chat_service is None:
        _chat_service = ChatService(get_assistant_client())
    return _chat_service
