"""Schemas for the chats endpoints."""

from typing import Literal

from pydantic import BaseModel, Field


class ChatMessageIn(BaseModel):
    """One message of an inbound chat turn."""

    role: Literal["user", "assistant", "system"] = Field(..., description="Message author role.")
    content: str = Field(..., min_length=1, description="Message text.")


class ChatRequest(BaseModel):
    """
    Request body for POST /api/v1/chats.

    An empty messages list only creates a chat and returns its descriptor. Otherwise the
    last message is the question to answer; earlier messages seed a new chat's history.
    """

    messages: list[ChatMessageIn] = Field(default_factory=list, description="Ordered chat messages.")
    session_id: str | None = Field(None, description="Existing chat url key; omit to start a new chat.")
    name: str | None = Field(None, description="Title for a new chat.")
    index: str = Field("default", description="Knowledge base index name passed to retrieval tools.")
    engine: int | None = Field(None, description="Deprecated numeric chat engine id; use chat_engine.")
    chat_engine: str | None = Field(None, description="Chat engine id or name; default engine when omitted.")
    regenerate: bool = Field(False, description="Re-answer from message_id, discarding it and later messages.")
    message_id: int | None = Field(None, description="Target message id, required when regenerate is set.")
    stream: bool = Field(True, description="Stream the answer as Server-Sent Events.")


class ChatSessionOut(BaseModel):
    """Created or listed chat session descriptor."""

    id: int
    url_key: str
    title: str
    engine: str
    engine_id: int
    engine_name: str
    engine_options: str = "{}"
    created_by: str
    created_at: str


class ChatMessageOut(BaseModel):
    """Persisted chat message."""

    id: int
    chat_id: int
    role: str
    content: str
    ordinal: int
    status: str
    created_at: str


class ChatAnswer(BaseModel):
    """Response for a non-streaming chat turn."""

    session_id: str = Field(..., description="Url key of the chat the answer belongs to.")
    answer: str = Field(..., description="Synthesized answer.")
    sub_questions: list[dict[str, str]] = Field(
        default_factory=list, description="Generated sub-questions as {sub_question, tool_name}."
    )


class ChatPage(BaseModel):
    """One page of chats."""

    items: list[ChatSessionOut]
    total: int
    page: int
    page_size: int


class ChatDetail(BaseModel):
    """A chat with its ordered message history."""

    chat: ChatSessionOut
    messages: list[ChatMessageOut]
