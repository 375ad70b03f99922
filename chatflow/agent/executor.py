"""
Sub-question execution: run every sub-question against its tool concurrently.

One asyncio task per sub-question, joined with asyncio.gather. Each task turns its
own failure (missing tool, error, timeout, empty answer) into an absence result, so
one slow or broken tool never cancels or delays the others' results.
"""

import asyncio
import inspect
import logging
from dataclasses import dataclass

from chatflow.agent.question_gen import SubQuestion
from chatflow.agent.tools import ToolOutput, ToolRegistry
from chatflow.core.config import TOOL_TIMEOUT

logger = logging.getLogger(__name__)

TOOL_NOT_FOUND = "tool_not_found"
EMPTY_RESPONSE = "empty_response"
TOOL_ERROR = "tool_error"
TIMEOUT = "timeout"


@dataclass
class SubQuestionResult:
    """Scored fragment for one sub-question, or an absence marker explaining why there is none."""

    sub_question: str
    tool_name: str
    text: str = ""
    score: float = 0.0
    absence: str | None = None

    @property
    def present(self) -> bool:
        return self.absence is None


def fragment_text(sub_question: str, answer: str) -> str:
    return f"Sub question: {sub_question}\n\nResponse: {answer}"


def present_fragments(results: list[SubQuestionResult]) -> list[SubQuestionResult]:
    """Drop absence results, keeping the original order."""
    return [r for r in results if r.present]


def _normalize(output) -> tuple[str, float]:
    """Tool output -> (text, score). Raises on a malformed score."""
    score = None
    if isinstance(output, ToolOutput):
        output, score = output.text, output.score
    text = str(output) if output else ""
    return text, float(score) if score is not None else 0.0


class SubQuestionExecutor:
    def __init__(self, registry: ToolRegistry, timeout: float | None = TOOL_TIMEOUT) -> None:
        self.registry = registry
        self.timeout = timeout

    async def _call_tool(self, tool, text: str):
        if inspect.iscoroutinefunction(tool.query):
            call = tool.query(text)
        else:
            call = asyncio.to_thread(tool.query, text)
        return await asyncio.wait_for(call, timeout=self.timeout)

    async def _run_one(self, index: int, sq: SubQuestion) -> SubQuestionResult:
        absent = SubQuestionResult(sub_question=sq.sub_question, tool_name=sq.tool_name)
        tool = self.registry.get(sq.tool_name)
        if tool is None:
            logger.warning("[executor] sub_question_%d tool not found: %r", index, sq.tool_name)
            absent.absence = TOOL_NOT_FOUND
            return absent
        try:
            output = await self._call_tool(tool, sq.sub_question)
            text, score = _normalize(output)
        except asyncio.TimeoutError:
            logger.warning("[executor] sub_question_%d tool=%s timed out after %ss", index, sq.tool_name, self.timeout)
            absent.absence = TIMEOUT
            return absent
        except Exception as e:
            logger.warning("[executor] sub_question_%d tool=%s failed: %s", index, sq.tool_name, e)
            absent.absence = TOOL_ERROR
            return absent

        if not text.strip():
            logger.info("[executor] sub_question_%d tool=%s returned nothing", index, sq.tool_name)
            absent.absence = EMPTY_RESPONSE
            return absent
        logger.info("[executor] sub_question_%d tool=%s answer_len=%d", index, sq.tool_name, len(text))
        return SubQuestionResult(
            sub_question=sq.sub_question,
            tool_name=sq.tool_name,
            text=fragment_text(sq.sub_question, text),
            score=score,
        )

    async def execute(self, sub_questions: list[SubQuestion]) -> list[SubQuestionResult]:
        """Return one result per sub-question, in input order, after every call has settled."""
        logger.info("[executor:execute] IN  sub_questions=%d", len(sub_questions))
        results = list(await asyncio.gather(*(self._run_one(i, sq) for i, sq in enumerate(sub_questions))))
        logger.info(
            "[executor:execute] OUT present=%d absent=%s",
            sum(1 for r in results if r.present),
            [r.absence for r in results if not r.present],
        )
        return results
