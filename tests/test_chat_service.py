"""
Tests for the chat session lifecycle: create-only, new, resumed and regenerate turns.

Engines are built from fakes (see conftest); async turns run with asyncio.run.
"""

import asyncio
from unittest.mock import MagicMock

import pytest

from chatflow.core.chat_store import ChatStore
from chatflow.core.errors import ChatValidationError, ConflictError, NotFoundError
from chatflow.schemas.chat import ChatRequest
from chatflow.services.chat_service import ChatService, TurnState, TurnStream, limit_title_length


def _request(messages=(), **kwargs) -> ChatRequest:
    return ChatRequest(messages=[{"role": r, "content": c} for r, c in messages], **kwargs)


def _chat_count(store: ChatStore) -> int:
    return store.list_chats(page=1, page_size=100)["total"]


class _Upstream:
    def __init__(self, deltas) -> None:
        self._deltas = iter(deltas)
        self.closed = False

    def __iter__(self):
        return self

    def __next__(self) -> str:
        return next(self._deltas)

    def close(self) -> None:
        self.closed = True


@pytest.fixture
def service(store: ChatStore, engine_factory) -> ChatService:
    return ChatService(store, engine_factory=engine_factory)


class TestLimitTitleLength:
    def test_short_title_unchanged(self) -> None:
        """Titles within the limit are returned as-is."""
        assert limit_title_length("What is X?") == "What is X?"

    def test_long_title_truncated(self) -> None:
        """Titles over the limit are cut to exactly the limit."""
        assert limit_title_length("x" * 300) == "x" * 255
        assert limit_title_length("abcdef", limit=3) == "abc"


class TestNoMessages:
    def test_session_key_is_conflict_and_creates_nothing(self, service: ChatService, store: ChatStore) -> None:
        """Empty messages with a session_id is a conflict and no chat is created."""
        with pytest.raises(ConflictError):
            service.resolve(_request(session_id="abc"), "u1")
        assert _chat_count(store) == 0

    def test_creates_exactly_one_chat_with_default_title(self, service: ChatService, store: ChatStore) -> None:
        """Empty messages create one chat titled "Untitled", owned by the caller."""
        turn = service.resolve(_request(), "u1")
        assert turn.state is TurnState.NO_MESSAGES
        assert turn.chat["title"] == "Untitled"
        assert turn.chat["created_by"] == "u1"
        assert _chat_count(store) == 1

    def test_supplied_name_is_truncated(self, service: ChatService) -> None:
        """A supplied name longer than the limit is truncated into the title."""
        turn = service.resolve(_request(name="n" * 400), "u1")
        assert turn.chat["title"] == "n" * 255

    def test_chat_returns_created_only_without_running_engine(self, store: ChatStore) -> None:
        """A create-only turn never builds an engine."""
        factory = MagicMock()
        svc = ChatService(store, engine_factory=factory)
        result = asyncio.run(svc.chat(_request(), "u1"))
        assert result.created_only is True
        factory.assert_not_called()

    def test_unknown_chat_engine_is_not_found(self, service: ChatService, store: ChatStore) -> None:
        """An unknown chat engine name is not found and creates nothing."""
        with pytest.raises(NotFoundError):
            service.resolve(_request(chat_engine="nope"), "u1")
        assert _chat_count(store) == 0


class TestNewSession:
    def test_single_message_scenario(self, service: ChatService, store: ChatStore) -> None:
        """One message: chat titled by it, it is the query, nothing persisted yet."""
        turn = service.resolve(_request([("user", "What is X?")]), "u1")
        assert turn.state is TurnState.NEW_SESSION
        assert turn.chat["title"] == "What is X?"
        assert turn.query == "What is X?"
        assert turn.history == []
        assert store.get_messages(turn.chat["id"]) == []

    def test_prior_messages_persisted_in_order(self, service: ChatService, store: ChatStore) -> None:
        """All but the last message are persisted with ordinals 0..n-2 and become history."""
        turn = service.resolve(_request([("user", "A"), ("assistant", "B"), ("user", "C")]), "u1")
        persisted = store.get_messages(turn.chat["id"])
        assert [(m["content"], m["ordinal"]) for m in persisted] == [("A", 0), ("B", 1)]
        assert turn.query == "C"
        assert turn.history == [{"role": "user", "content": "A"}, {"role": "assistant", "content": "B"}]

    def test_title_prefers_name_then_last_user_message(self, service: ChatService) -> None:
        """Title is the supplied name, else the last user message."""
        named = service.resolve(_request([("user", "Q")], name="My chat"), "u1")
        assert named.chat["title"] == "My chat"
        derived = service.resolve(_request([("user", "First"), ("assistant", "Reply")]), "u1")
        assert derived.chat["title"] == "First"

    def test_long_last_message_title_truncated(self, service: ChatService) -> None:
        """A derived title is truncated like a supplied one."""
        turn = service.resolve(_request([("user", "q" * 500)]), "u1")
        assert len(turn.chat["title"]) == 255

    def test_selected_engine_is_stored_on_chat(self, service: ChatService, store: ChatStore) -> None:
        """The chat records the engine selected by name."""
        store.add_chat_engine("docs-only", engine_options={"tools": ["knowledge_base"]})
        turn = service.resolve(_request([("user", "Q")], chat_engine="docs-only"), "u1")
        assert turn.chat["engine_name"] == "docs-only"


class TestResumedSession:
    def test_unknown_session_is_not_found_and_persists_nothing(self, service: ChatService, store: ChatStore) -> None:
        """An unknown session key is not found and nothing is written."""
        with pytest.raises(NotFoundError):
            asyncio.run(service.chat(_request([("user", "Q")], session_id="missing"), "u1"))
        assert _chat_count(store) == 0

    def test_live_query_not_persisted_before_orchestration(self, service: ChatService, store: ChatStore) -> None:
        """Resuming loads persisted history and leaves the live query unsaved."""
        chat = service.resolve(_request([("user", "A"), ("assistant", "B"), ("user", "C")]), "u1").chat
        turn = service.resolve(_request([("user", "D")], session_id=chat["url_key"]), "u1")
        assert turn.state is TurnState.RESUMED_SESSION
        assert turn.query == "D"
        assert [m["content"] for m in turn.history] == ["A", "B"]
        assert len(store.get_messages(chat["id"])) == 2


class TestRegenerate:
    def test_missing_message_id_fails_before_any_work(self, store: ChatStore) -> None:
        """Regenerate without message_id fails before storage or engine work."""
        factory = MagicMock()
        svc = ChatService(store, engine_factory=factory)
        with pytest.raises(ChatValidationError):
            asyncio.run(svc.chat(_request([("user", "Q")], session_id="abc", regenerate=True), "u1"))
        with pytest.raises(ChatValidationError):
            asyncio.run(svc.chat(_request([("user", "Q")], regenerate=True), "u1"))
        factory.assert_not_called()
        assert _chat_count(store) == 0

    def test_missing_session_id_is_validation_failure(self, service: ChatService) -> None:
        """Regenerate with message_id but no session_id is a validation failure."""
        with pytest.raises(ChatValidationError):
            service.resolve(_request([("user", "Q")], regenerate=True, message_id=1), "u1")

    def test_truncates_from_target_message(self, service: ChatService, store: ChatStore) -> None:
        """The target message and everything after it are deleted before the turn runs."""
        chat = service.resolve(_request([("user", "A"), ("assistant", "B"), ("user", "C")]), "u1").chat
        rows = store.insert_messages(chat["id"], [{"role": "user", "content": "C"}, {"role": "assistant", "content": "D"}])
        turn = service.resolve(
            _request([("user", "C")], session_id=chat["url_key"], regenerate=True, message_id=rows[0]["id"]),
            "u1",
        )
        assert turn.state is TurnState.REGENERATE_SESSION
        assert [m["content"] for m in turn.history] == ["A", "B"]
        assert [m["content"] for m in store.get_messages(chat["id"])] == ["A", "B"]

    def test_target_from_other_chat_is_not_found(self, service: ChatService, store: ChatStore) -> None:
        """A message id from another chat is not found and nothing is truncated."""
        chat = service.resolve(_request([("user", "A"), ("user", "B")]), "u1").chat
        other = service.resolve(_request([("user", "X"), ("user", "Y")]), "u1").chat
        foreign_id = store.get_messages(other["id"])[0]["id"]
        with pytest.raises(NotFoundError):
            service.resolve(
                _request([("user", "B")], session_id=chat["url_key"], regenerate=True, message_id=foreign_id), "u1"
            )
        assert len(store.get_messages(chat["id"])) == 1


class TestChatTurn:
    def test_non_streaming_turn_persists_query_and_answer(self, service: ChatService, store: ChatStore) -> None:
        """A batch turn persists the query and answer with consecutive ordinals."""
        result = asyncio.run(service.chat(_request([("user", "What is X?")], stream=False), "u1"))
        assert result.answer == "The answer is 42."
        assert [s.tool_name for s in result.sub_questions] == ["docs"]
        persisted = store.get_messages(result.chat["id"])
        assert [(m["role"], m["content"], m["ordinal"]) for m in persisted] == [
            ("user", "What is X?", 0),
            ("assistant", "The answer is 42.", 1),
        ]

    def test_streaming_turn_persists_after_exhaustion(self, service: ChatService, store: ChatStore) -> None:
        """A streamed turn is persisted only once the stream is exhausted."""
        result = asyncio.run(service.chat(_request([("user", "What is X?")], stream=True), "u1"))
        assert store.get_messages(result.chat["id"]) == []
        assert "".join(result.stream) == "The answer is 42."
        persisted = store.get_messages(result.chat["id"])
        assert [m["status"] for m in persisted] == ["SUCCEED", "SUCCEED"]
        assert persisted[1]["content"] == "The answer is 42."

    def test_abandoned_stream_persists_partial_answer_as_failed(
        self, service: ChatService, store: ChatStore, fake_llm
    ) -> None:
        """Closing mid-stream closes the LLM stream and stores the partial answer as FAILED."""
        result = asyncio.run(service.chat(_request([("user", "What is X?")], stream=True), "u1"))
        assert next(result.stream) == "The answer "
        result.stream.close()
        assert fake_llm.stream_closed is True
        persisted = store.get_messages(result.chat["id"])
        assert [(m["role"], m["content"], m["status"]) for m in persisted] == [
            ("user", "What is X?", "SUCCEED"),
            ("assistant", "The answer ", "FAILED"),
        ]

    def test_stream_closed_before_first_pull_still_persists_query(
        self, service: ChatService, store: ChatStore
    ) -> None:
        """Closing a stream that was never read still stores the query with an empty FAILED answer."""
        result = asyncio.run(service.chat(_request([("user", "What is X?")], stream=True), "u1"))
        result.stream.close()
        result.stream.close()
        persisted = store.get_messages(result.chat["id"])
        assert [(m["role"], m["content"], m["status"]) for m in persisted] == [
            ("user", "What is X?", "SUCCEED"),
            ("assistant", "", "FAILED"),
        ]

    def test_resumed_turn_appends_after_history(self, service: ChatService, store: ChatStore) -> None:
        """A resumed turn continues the ordinal sequence."""
        first = asyncio.run(service.chat(_request([("user", "What is X?")], stream=False), "u1"))
        asyncio.run(service.chat(_request([("user", "And Y?")], session_id=first.chat["url_key"], stream=False), "u1"))
        persisted = store.get_messages(first.chat["id"])
        assert [m["ordinal"] for m in persisted] == [0, 1, 2, 3]
        assert persisted[2]["content"] == "And Y?"

    def test_get_chat_and_list(self, service: ChatService) -> None:
        """A persisted chat can be fetched by key and appears in the owner's listing."""
        result = asyncio.run(service.chat(_request([("user", "What is X?")], stream=False), "u1"))
        chat, messages = service.get_chat(result.chat["url_key"])
        assert chat["id"] == result.chat["id"]
        assert len(messages) == 2
        assert service.list_chats("u1", 1, 10)["total"] == 1
        with pytest.raises(NotFoundError):
            service.get_chat("missing")


class TestTurnStream:
    def test_upstream_failure_finishes_once_as_failed(self) -> None:
        """An upstream error records the partial answer as FAILED once and is re-raised."""
        finished = []

        def upstream():
            yield "part"
            raise ConnectionError("provider down")

        stream = TurnStream(upstream(), lambda answer, status: finished.append((answer, status)))
        assert next(stream) == "part"
        with pytest.raises(ConnectionError):
            next(stream)
        stream.close()
        assert finished == [("part", "FAILED")]
        with pytest.raises(StopIteration):
            next(stream)

    def test_close_before_first_pull_closes_upstream(self) -> None:
        """Closing before any read still closes the upstream and finishes as FAILED."""
        finished = []
        upstream = _Upstream(["never read"])
        stream = TurnStream(upstream, lambda answer, status: finished.append((answer, status)))
        stream.close()
        assert upstream.closed is True
        assert finished == [("", "FAILED")]
