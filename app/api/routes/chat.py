"""Chat endpoint routes for the assistant.

Provides:
- GET /assistants/chat?userId= - Get the user's conversation messages
- POST /assistants/chat/message - Send message, get the assistant reply
- POST /assistants/chat/message/stream - Send message, stream the reply (SSE)
"""
import asyncio
import json
import logging
from datetime import datetime
from typing import AsyncIterator

from fastapi import APIRouter, Depends, HTTPException, Query, status
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel
from sqlalchemy.ext.asyncio import async_sessionmaker
from sqlmodel.ext.asyncio.session import AsyncSession

from app.core.deps import get_chat_service, get_db, get_session_factory
from app.core.exceptions import NotFoundError
from app.models.conversation import MessageRole
from app.services.chat_service import ChatService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/assistants", tags=["assistant"])


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ChatMessageRequest(CamelModel):
    """Request model for sending chat message."""
    user_id: str = Field(min_length=1)
    content: str = Field(min_length=1)


class ChatMessageResponse(CamelModel):
    """Response model for the assistant reply."""
    id: int
    content: str
    role: MessageRole


class MessageResponse(CamelModel):
    """Response model for a single message."""
    id: int
    content: str
    created_at: datetime
    role: MessageRole
    chat_id: int


class ChatResponse(CamelModel):
    """Response model for a user's conversation."""
    messages: list[MessageResponse]


@router.get("/chat", response_model=ChatResponse)
async def get_chat(
    user_id: str = Query(alias="userId", min_length=1),
    session: AsyncSession = Depends(get_db),
    chat_service: ChatService = Depends(get_chat_service),
) -> ChatResponse:
    """
    Get the user's conversation, oldest message first.

    Creates the conversation (and its remote thread) on first access.
    """
    conversation, messages = await chat_service.get_chat(session, user_id)
    return ChatResponse(
        messages=[
            MessageResponse(
                id=msg.id,
                content=msg.content,
                created_at=msg.created_at,
                role=msg.role,
                chat_id=conversation.id,
            )
            for msg in messages
        ]
    )


@router.post("/chat/message", response_model=ChatMessageResponse)
async def send_chat_message(
    request: ChatMessageRequest,
    session: AsyncSession = Depends(get_db),
    chat_service: ChatService = Depends(get_chat_service),
) -> ChatMessageResponse:
    """
    Send message to the assistant.

    Raises:
        HTTPException: 404 if a referenced entity does not exist
    """
    try:
        result = await chat_service.handle_message(session, request.user_id, request.content)
    except NotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))

    return ChatMessageResponse(id=result.message_id, content=result.content, role=result.role)


def _sse(data: dict, event: str = "") -> str:
    prefix = f"event: {event}\n" if event else ""
    return f"{prefix}data: {json.dumps(data)}\n\n"


@router.post("/chat/message/stream")
async def stream_chat_message(
    request: ChatMessageRequest,
    session_factory: async_sessionmaker = Depends(get_session_factory),
    chat_service: ChatService = Depends(get_chat_service),
) -> StreamingResponse:
    """
    Send message to the assistant and stream the reply as Server-Sent Events.

    Frames: data {"text", "finished": false}* then one data {"text", "finished": true}
    followed by data {"id", "content", "role"}; on failure a final "error" event.
    """

    async def event_stream() -> AsyncIterator[str]:
        queue: asyncio.Queue = asyncio.Queue()

        async def sink(text: str, finished: bool) -> None:
            await queue.put(("chunk", {"text": text, "finished": finished}))

        async def run_turn() -> None:
            # The queue always gets exactly one terminal item, whatever fails
            terminal = ("error", {"detail": "Internal server error"})
            try:
                async with session_factory() as session:
                    result = await chat_service.handle_message(
                        session, request.user_id, request.content, stream_sink=sink
                    )
                terminal = (
                    "done", {"id": result.message_id, "content": result.content, "role": result.role.value}
                )
            except Exception:
                logger.exception(f"Streaming turn failed for user {request.user_id}")
            finally:
                queue.put_nowait(terminal)

        task = asyncio.create_task(run_turn())
        try:
            while True:
                kind, payload = await queue.get()
                if kind == "chunk":
                    yield _sse(payload)
                elif kind == "done":
                    yield _sse(payload, event="message")
                    break
                else:
                    yield _sse(payload, event="error")
                    break
        finally:
            await task

    return StreamingResponse(event_stream(), media_type="text/event-stream")
