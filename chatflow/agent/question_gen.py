"""
Question generation: split a user question into sub-questions, each routed to one tool.

The LLM sees the tool names/descriptions and the recent conversation and must answer
with a JSON array of {"sub_question", "tool_name"} objects. Order is preserved.
"""

import json
import logging
import re
from collections.abc import Callable
from dataclasses import dataclass

from chatflow.agent.llm import complete
from chatflow.agent.tools import ToolMetadata
from chatflow.core.config import DECOMPOSE_MAX_TOKENS, MAX_SUB_QUESTIONS
from chatflow.core.errors import DecompositionError, ServiceUnavailableError

logger = logging.getLogger(__name__)

_FENCE_RE = re.compile(r"^```(?:json)?\s*|\s*```$", re.IGNORECASE)


@dataclass(frozen=True)
class SubQuestion:
    sub_question: str
    tool_name: str


def format_history(history: list | None, max_messages: int = 6) -> str:
    """Format last N messages for inclusion in prompts."""
    if not history:
        return ""
    recent = history[-max_messages:]
    lines = []
    for m in recent:
        role = (m.get("role") or "user").strip().lower()
        content = (m.get("content") or "").strip()
        if not content or role not in ("user", "assistant"):
            continue
        label = "User" if role == "user" else "Assistant"
        lines.append(f"{label}: {content}")
    if not lines:
        return ""
    return "Recent conversation:\n" + "\n".join(lines) + "\n\n"


def _parse_sub_questions(raw: str) -> list[SubQuestion]:
    text = _FENCE_RE.sub("", (raw or "").strip()).strip()
    data = json.loads(text)
    if isinstance(data, dict):
        data = data.get("items")
    if not isinstance(data, list):
        raise ValueError("expected a JSON array of sub-questions")
    out = []
    for item in data:
        if not isinstance(item, dict):
            raise ValueError(f"sub-question entry is not an object: {item!r}")
        question = str(item.get("sub_question") or "").strip()
        tool_name = str(item.get("tool_name") or "").strip()
        if question and tool_name:
            out.append(SubQuestion(sub_question=question, tool_name=tool_name))
    return out


class LLMQuestionGenerator:
    """Generates sub-questions with the configured LLM."""

    def __init__(
        self,
        llm: Callable[..., str] = complete,
        max_sub_questions: int = MAX_SUB_QUESTIONS,
    ) -> None:
        self.llm = llm
        self.max_sub_questions = max_sub_questions

    def build_prompt(self, tools: list[ToolMetadata], query: str, history: list | None = None) -> str:
        tools_json = json.dumps(
            {t.name: t.description for t in tools}, ensure_ascii=False, indent=2
        )
        return f"""
        Given a user question and a list of tools, output a list of relevant sub-questions,
        each paired with the one tool best suited to answer it.

        Rules:
        - Each sub-question must be answerable on its own by the chosen tool.
        - Use only tool names from the list below.
        - If there is recent conversation, use it to resolve references (e.g. "it", "that policy").
        - Output at most {self.max_sub_questions} sub-questions.
        - Output ONLY a JSON array like [{{"sub_question": "...", "tool_name": "..."}}], no prose.

        Tools:
        {tools_json}

        {format_history(history)}User question: {query}
        """

    def generate(self, tools: list[ToolMetadata], query: str, history: list | None = None) -> list[SubQuestion]:
        """Return sub-questions in the order the LLM produced them. Raises DecompositionError."""
        logger.info("[question_gen:generate] IN  query=%r tools=%s", query, [t.name for t in tools])
        if not tools:
            logger.info("[question_gen:generate] OUT no tools, no sub-questions")
            return []
        prompt = self.build_prompt(tools, query, history)
        try:
            raw = self.llm(prompt, max_tokens=DECOMPOSE_MAX_TOKENS)
            sub_questions = _parse_sub_questions(raw)
        except ServiceUnavailableError:
            raise
        except Exception as e:
            logger.exception("[question_gen:generate] failed")
            raise DecompositionError(f"Failed to generate sub-questions: {e}") from e
        sub_questions = sub_questions[: self.max_sub_questions]
        logger.info(
            "[question_gen:generate] OUT sub_questions=%s",
            [(s.tool_name, s.sub_question) for s in sub_questions],
        )
        return sub_questions
