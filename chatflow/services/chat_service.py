"""
Chat service: resolve the session for an inbound turn, run the sub-question engine,
persist the turn.

Responsibility: Session lifecycle (create-only, new, resumed, regenerate) and the
order of storage side effects around orchestration. Called by the API; no HTTP here.
Two turns on the same session are not serialized here; that is left to the caller.
"""

import json
import logging
from collections.abc import Callable, Iterator
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from chatflow.agent.engine import OrchestrationRequest, SubQuestionQueryEngine
from chatflow.agent.question_gen import LLMQuestionGenerator, SubQuestion
from chatflow.agent.tools import build_registry
from chatflow.core.chat_store import ChatStore
from chatflow.core.config import DEFAULT_CHAT_TITLE, MAX_SUB_QUESTIONS, TITLE_MAX_LENGTH
from chatflow.core.errors import ChatValidationError, ConflictError, NotFoundError
from chatflow.schemas.chat import ChatRequest

logger = logging.getLogger(__name__)


class TurnState(str, Enum):
    NO_MESSAGES = "no_messages"
    NEW_SESSION = "new_session"
    RESUMED_SESSION = "resumed_session"
    REGENERATE_SESSION = "regenerate_session"


@dataclass
class ResolvedTurn:
    state: TurnState
    chat: dict[str, Any]
    query: str = ""
    history: list[dict[str, str]] = field(default_factory=list)


@dataclass
class ChatTurnResult:
    chat: dict[str, Any]
    created_only: bool = False
    answer: str | None = None
    stream: Iterator[str] | None = None
    sub_questions: list[SubQuestion] = field(default_factory=list)


class TurnStream:
    """
    Answer increments for one streamed turn. The turn is persisted exactly once: as
    SUCCEED when the upstream is exhausted, or as FAILED with the partial answer when
    the upstream raises or the stream is closed early (even before the first pull).
    """

    def __init__(self, upstream: Iterator[str], on_finish: Callable[[str, str], None]) -> None:
        self._upstream = iter(upstream)
        self._on_finish = on_finish
        self._parts: list[str] = []
        self._finished = False

    def __iter__(self) -> "TurnStream":
        return self

    def __next__(self) -> str:
        if self._finished:
            raise StopIteration
        try:
            delta = next(self._upstream)
        except StopIteration:
            self._finish("SUCCEED")
            raise
        except Exception:
            self._finish("FAILED")
            raise
        self._parts.append(delta)
        return delta

    def close(self) -> None:
        self._finish("FAILED")

    def _finish(self, status: str) -> None:
        if self._finished:
            return
        self._finished = True
        close = getattr(self._upstream, "close", None)
        if close is not None:
            close()
        self._on_finish("".join(self._parts), status)


def limit_title_length(title: str, limit: int = TITLE_MAX_LENGTH) -> str:
    return title[:limit] if len(title) > limit else title


def _engine_options(chat: dict[str, Any]) -> dict[str, Any]:
    try:
        options = json.loads(chat.get("engine_options") or "{}")
    except json.JSONDecodeError:
        logger.warning("[chat_service] invalid engine_options on chat id=%s", chat.get("id"))
        return {}
    return options if isinstance(options, dict) else {}


def default_engine_factory(chat: dict[str, Any], request: ChatRequest) -> SubQuestionQueryEngine:
    """Build the engine from the chat's stored (immutable) engine options."""
    options = _engine_options(chat)
    registry = build_registry(options, index=request.index)
    question_gen = LLMQuestionGenerator(max_sub_questions=int(options.get("max_sub_questions") or MAX_SUB_QUESTIONS))
    return SubQuestionQueryEngine(registry, question_gen=question_gen)


class ChatService:
    def __init__(
        self,
        store: ChatStore,
        engine_factory: Callable[[dict[str, Any], ChatRequest], SubQuestionQueryEngine] = default_engine_factory,
    ) -> None:
        self.store = store
        self.engine_factory = engine_factory

    def _get_engine(self, request: ChatRequest) -> dict[str, Any]:
        selector = request.chat_engine if request.chat_engine is not None else request.engine
        engine = self.store.get_chat_engine(selector)
        if engine is None:
            raise NotFoundError(f"Chat engine {selector!r} not found")
        return engine

    def _create_chat(self, request: ChatRequest, user_id: str, title: str) -> dict[str, Any]:
        engine = self._get_engine(request)
        return self.store.create_chat(engine=engine, created_by=user_id, title=limit_title_length(title))

    def resolve(self, request: ChatRequest, user_id: str) -> ResolvedTurn:
        """
        Decide the lifecycle state of a turn and apply its storage side effects in order:
        create chat, insert prior messages (new chats), truncate history (regenerate).
        """
        if request.regenerate:
            if request.message_id is None:
                raise ChatValidationError("Regenerate requires message_id")
            if not request.session_id:
                raise ChatValidationError("Regenerate requires session_id")

        messages = request.messages
        if not messages:
            if request.session_id:
                raise ConflictError("Cannot assign session_id when creating a chat")
            chat = self._create_chat(request, user_id, request.name or DEFAULT_CHAT_TITLE)
            logger.info("[chat_service:resolve] state=no_messages url_key=%s", chat["url_key"])
            return ResolvedTurn(state=TurnState.NO_MESSAGES, chat=chat)

        query = messages[-1].content

        if not request.session_id:
            last_user = next((m.content for m in reversed(messages) if m.role == "user"), "")
            chat = self._create_chat(request, user_id, request.name or last_user or DEFAULT_CHAT_TITLE)
            previous = [{"role": m.role, "content": m.content} for m in messages[:-1]]
            if previous:
                self.store.insert_messages(chat["id"], [{**m, "status": "SUCCEED"} for m in previous])
            logger.info(
                "[chat_service:resolve] state=new_session url_key=%s history=%d", chat["url_key"], len(previous)
            )
            return ResolvedTurn(state=TurnState.NEW_SESSION, chat=chat, query=query, history=previous)

        chat = self.store.get_chat_by_url_key(request.session_id)
        if chat is None:
            raise NotFoundError(f"Chat {request.session_id} not found")

        state = TurnState.RESUMED_SESSION
        if request.regenerate:
            if self.store.get_message(chat["id"], request.message_id) is None:
                raise NotFoundError(f"Message {request.message_id} not found in chat {request.session_id}")
            self.store.truncate_messages_from(chat["id"], request.message_id)
            state = TurnState.REGENERATE_SESSION

        history = [{"role": m["role"], "content": m["content"]} for m in self.store.get_messages(chat["id"])]
        logger.info("[chat_service:resolve] state=%s url_key=%s history=%d", state.value, chat["url_key"], len(history))
        return ResolvedTurn(state=state, chat=chat, query=query, history=history)

    def _persist_turn(self, chat_id: int, query: str, answer: str, status: str = "SUCCEED") -> None:
        self.store.insert_messages(
            chat_id,
            [
                {"role": "user", "content": query, "status": "SUCCEED"},
                {"role": "assistant", "content": answer, "status": status},
            ],
        )

    def _persisting_stream(self, chat_id: int, query: str, upstream: Iterator[str]) -> TurnStream:
        def persist(answer: str, status: str) -> None:
            self._persist_turn(chat_id, query, answer, status=status)
            logger.info("[chat_service:stream] persisted chat_id=%s status=%s answer_len=%d", chat_id, status, len(answer))

        return TurnStream(upstream, persist)

    async def chat(self, request: ChatRequest, user_id: str) -> ChatTurnResult:
        """Run one chat turn. Raises the named ChatError subclasses for rejected turns."""
        turn = self.resolve(request, user_id)
        if turn.state is TurnState.NO_MESSAGES:
            return ChatTurnResult(chat=turn.chat, created_only=True)

        engine = self.engine_factory(turn.chat, request)
        response = await engine.query(
            OrchestrationRequest(
                query=turn.query,
                history=turn.history,
                regenerate=request.regenerate,
                message_id=request.message_id,
                stream=request.stream,
            )
        )
        if request.stream:
            return ChatTurnResult(
                chat=turn.chat,
                stream=self._persisting_stream(turn.chat["id"], turn.query, response.stream),
                sub_questions=response.sub_questions,
            )
        answer = response.response or ""
        self._persist_turn(turn.chat["id"], turn.query, answer)
        return ChatTurnResult(chat=turn.chat, answer=answer, sub_questions=response.sub_questions)

    def list_chats(self, user_id: str | None, page: int, page_size: int) -> dict[str, Any]:
        return self.store.list_chats(user_id=user_id, page=page, page_size=page_size)

    def get_chat(self, session_id: str) -> tuple[dict[str, Any], list[dict[str, Any]]]:
        chat = self.store.get_chat_by_url_key(session_id)
        if chat is None:
            raise NotFoundError(f"Chat {session_id} not found")
        return chat, self.store.get_messages(chat["id"])
