"""
Shared fixtures: a temp SQLite chat store and an engine built from a fake LLM and tools.

No test talks to OpenAI, Hugging Face, DuckDuckGo or a retrieval server.
"""

import pytest

from chatflow.agent.engine import SubQuestionQueryEngine
from chatflow.agent.question_gen import LLMQuestionGenerator
from chatflow.agent.synthesizer import ResponseSynthesizer
from chatflow.agent.tools import FunctionTool, ToolRegistry
from chatflow.core.chat_store import ChatStore
from tests.fakes import FakeLLM


@pytest.fixture
def store(tmp_path) -> ChatStore:
    return ChatStore(tmp_path / "chats.db")


@pytest.fixture
def fake_llm() -> FakeLLM:
    return FakeLLM()


@pytest.fixture
def registry() -> ToolRegistry:
    return ToolRegistry([FunctionTool("docs", "Project documentation.", lambda q: "42")])


@pytest.fixture
def engine_factory(fake_llm: FakeLLM, registry: ToolRegistry):
    def factory(chat, request) -> SubQuestionQueryEngine:
        return SubQuestionQueryEngine(
            registry,
            question_gen=LLMQuestionGenerator(llm=fake_llm.complete),
            synthesizer=ResponseSynthesizer(llm=fake_llm.complete, llm_stream=fake_llm.complete_stream),
        )

    return factory
