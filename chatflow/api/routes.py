"""
API route aggregator: register endpoints; no logic, only delegate to the chat service and handlers.
"""

import logging
from functools import lru_cache

from fastapi import APIRouter, Depends, Header, Query
from fastapi.responses import StreamingResponse

from chatflow.api.handlers import sse_generator, to_http_exception
from chatflow.core.chat_store import ChatStore
from chatflow.core.config import DEFAULT_PAGE_SIZE, MAX_PAGE_SIZE
from chatflow.core.errors import ChatError
from chatflow.schemas.chat import (
    ChatAnswer,
    ChatDetail,
    ChatMessageOut,
    ChatPage,
    ChatRequest,
    ChatSessionOut,
)
from chatflow.services.chat_service import ChatService

logger = logging.getLogger(__name__)
router = APIRouter()


@lru_cache(maxsize=1)
def get_chat_service() -> ChatService:
    return ChatService(ChatStore())


# --- System ---

@router.get("/", tags=["system"])
def root():
    return {"status": "Sub-question chat backend running"}


@router.get("/health", tags=["system"])
def health():
    return {"ok": True}


# --- Chats ---

@router.post(
    "/api/v1/chats",
    tags=["chats"],
    summary="Create a chat or answer a chat turn",
    description=(
        "Empty messages: create a chat and return its descriptor (409 if session_id is given). "
        "Otherwise answer the last message, as JSON or as Server-Sent Events when stream is true "
        "(events: session, answer_delta, done, error). 404 unknown chat/engine/message, "
        "400 invalid regenerate, 502 LLM failure."
    ),
    response_model=ChatSessionOut | ChatAnswer,
)
async def post_chat(
    body: ChatRequest,
    x_user_id: str = Header("anonymous"),
    service: ChatService = Depends(get_chat_service),
):
    logger.info(
        "[api:post_chat] IN  messages=%d session_id=%s regenerate=%s stream=%s",
        len(body.messages), body.session_id, body.regenerate, body.stream,
    )
    try:
        result = await service.chat(body, x_user_id)
    except ChatError as e:
        logger.info("[api:post_chat] rejected %s: %s", type(e).__name__, e.message)
        raise to_http_exception(e) from e

    if result.created_only:
        return ChatSessionOut(**result.chat)
    if result.stream is not None:
        return StreamingResponse(
            sse_generator(result),
            media_type="text/event-stream",
            headers={
                "Cache-Control": "no-cache",
                "Connection": "keep-alive",
                "X-Accel-Buffering": "no",
            },
        )
    logger.info("[api:post_chat] OUT answer_len=%d", len(result.answer or ""))
    return ChatAnswer(
        session_id=result.chat["url_key"],
        answer=result.answer or "",
        sub_questions=[{"sub_question": s.sub_question, "tool_name": s.tool_name} for s in result.sub_questions],
    )


@router.get("/api/v1/chats", response_model=ChatPage, tags=["chats"], summary="List the caller's chats")
def list_chats(
    page: int = Query(1, ge=1),
    page_size: int = Query(DEFAULT_PAGE_SIZE, ge=1, le=MAX_PAGE_SIZE),
    x_user_id: str = Header("anonymous"),
    service: ChatService = Depends(get_chat_service),
) -> ChatPage:
    data = service.list_chats(x_user_id, page, page_size)
    return ChatPage(
        items=[ChatSessionOut(**c) for c in data["items"]],
        total=data["total"],
        page=data["page"],
        page_size=data["page_size"],
    )


@router.get("/api/v1/chats/{session_id}", response_model=ChatDetail, tags=["chats"], summary="Get a chat with its messages")
def get_chat(session_id: str, service: ChatService = Depends(get_chat_service)) -> ChatDetail:
    try:
        chat, messages = service.get_chat(session_id)
    except ChatError as e:
        raise to_http_exception(e) from e
    return ChatDetail(
        chat=ChatSessionOut(**chat),
        messages=[ChatMessageOut(**m) for m in messages],
    )
