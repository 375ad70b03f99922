"""
LangGraph sub-question query engine: generate sub-questions → execute → synthesize.

Non-streaming runs all three nodes. Streaming stops after execution and hands the
collected fragments to the synthesizer's stream, so the caller pulls the answer.
"""

import asyncio
import logging
from collections.abc import Iterator
from dataclasses import dataclass, field
from typing import TypedDict

from langgraph.graph import END, StateGraph

from chatflow.agent.executor import SubQuestionExecutor, SubQuestionResult, present_fragments
from chatflow.agent.question_gen import LLMQuestionGenerator, SubQuestion
from chatflow.agent.synthesizer import ResponseSynthesizer
from chatflow.agent.tools import ToolRegistry

logger = logging.getLogger(__name__)


@dataclass
class OrchestrationRequest:
    query: str
    history: list[dict] = field(default_factory=list)  # [{"role", "content"}], oldest first
    regenerate: bool = False
    message_id: int | None = None
    stream: bool = False


@dataclass
class EngineResponse:
    response: str | None = None
    stream: Iterator[str] | None = None
    sub_questions: list[SubQuestion] = field(default_factory=list)
    results: list[SubQuestionResult] = field(default_factory=list)


class EngineState(TypedDict):
    query: str
    history: list
    sub_questions: list
    results: list
    answer: str


class SubQuestionQueryEngine:
    def __init__(
        self,
        registry: ToolRegistry,
        question_gen: LLMQuestionGenerator | None = None,
        executor: SubQuestionExecutor | None = None,
        synthesizer: ResponseSynthesizer | None = None,
    ) -> None:
        self.registry = registry
        self.question_gen = question_gen or LLMQuestionGenerator()
        self.executor = executor or SubQuestionExecutor(registry)
        self.synthesizer = synthesizer or ResponseSynthesizer()

    async def _generate_sub_questions(self, state: EngineState) -> dict:
        sub_questions = await asyncio.to_thread(
            self.question_gen.generate, self.registry.metadata, state["query"], state["history"]
        )
        return {"sub_questions": sub_questions}

    async def _execute_sub_questions(self, state: EngineState) -> dict:
        results = await self.executor.execute(state["sub_questions"])
        return {"results": results}

    async def _synthesize(self, state: EngineState) -> dict:
        fragments = present_fragments(state["results"])
        answer = await asyncio.to_thread(
            self.synthesizer.synthesize, state["query"], fragments, state["history"]
        )
        return {"answer": answer}

    def build_graph(self, stream: bool = False):
        """
        generate_sub_questions → execute_sub_questions → synthesize → END.
        With stream=True the graph ends after execution.
        """
        graph = StateGraph(EngineState)
        graph.add_node("generate_sub_questions", self._generate_sub_questions)
        graph.add_node("execute_sub_questions", self._execute_sub_questions)
        graph.set_entry_point("generate_sub_questions")
        graph.add_edge("generate_sub_questions", "execute_sub_questions")
        if stream:
            graph.add_edge("execute_sub_questions", END)
        else:
            graph.add_node("synthesize", self._synthesize)
            graph.add_edge("execute_sub_questions", "synthesize")
            graph.add_edge("synthesize", END)
        return graph.compile()

    async def query(self, request: OrchestrationRequest) -> EngineResponse:
        logger.info(
            "[engine:query] START query=%r history_len=%d stream=%s", request.query, len(request.history), request.stream
        )
        initial: EngineState = {
            "query": request.query,
            "history": request.history,
            "sub_questions": [],
            "results": [],
            "answer": "",
        }
        final = await self.build_graph(stream=request.stream).ainvoke(initial)
        sub_questions = final.get("sub_questions") or []
        results = final.get("results") or []
        if request.stream:
            fragments = present_fragments(results)
            logger.info("[engine:query] END streaming fragments=%d", len(fragments))
            return EngineResponse(
                stream=self.synthesizer.stream(request.query, fragments, request.history),
                sub_questions=sub_questions,
                results=results,
            )
        answer = final.get("answer") or ""
        logger.info("[engine:query] END answer_len=%d", len(answer))
        return EngineResponse(response=answer, sub_questions=sub_questions, results=results)
