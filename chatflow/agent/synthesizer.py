"""
Response synthesis: combine sub-question fragments into one answer.

synthesize() returns the whole answer; stream() yields it incrementally. Both build
the same prompt, so delivery mode never changes the content.
"""

import logging
from collections.abc import Callable, Iterator

from chatflow.agent.executor import SubQuestionResult
from chatflow.agent.llm import complete, complete_stream
from chatflow.agent.question_gen import format_history
from chatflow.core.config import (
    SYNTHESIS_MAX_CONTEXT_CHARS,
    SYNTHESIS_MAX_TOKENS,
    SYNTHESIS_ORDER_BY_SCORE,
)
from chatflow.core.errors import ServiceUnavailableError, SynthesisError

logger = logging.getLogger(__name__)

NO_EVIDENCE = (
    "No supporting information was retrieved for this question. Answer honestly from general "
    "knowledge, and say so plainly when you cannot answer reliably."
)


class ResponseSynthesizer:
    def __init__(
        self,
        llm: Callable[..., str] = complete,
        llm_stream: Callable[..., Iterator[str]] = complete_stream,
        order_by_score: bool = SYNTHESIS_ORDER_BY_SCORE,
        max_context_chars: int = SYNTHESIS_MAX_CONTEXT_CHARS,
        max_tokens: int = SYNTHESIS_MAX_TOKENS,
    ) -> None:
        self.llm = llm
        self.llm_stream = llm_stream
        self.order_by_score = order_by_score
        self.max_context_chars = max_context_chars
        self.max_tokens = max_tokens

    def _context_block(self, fragments: list[SubQuestionResult]) -> str:
        if not fragments:
            return NO_EVIDENCE
        ordered = sorted(fragments, key=lambda f: -f.score) if self.order_by_score else list(fragments)
        parts: list[str] = []
        used = 0
        for f in ordered:
            remaining = self.max_context_chars - used
            if remaining <= 0:
                break
            text = f.text[:remaining]
            parts.append(text)
            used += len(text)
        return "\n\n".join(parts)

    def build_prompt(self, query: str, fragments: list[SubQuestionResult], history: list | None = None) -> str:
        return f"""
        You are a helpful assistant. Answer the user's question using the sub-question answers below.

        Rules:
        - Address the question directly first, then add supporting details.
        - Combine the sub-question answers into one coherent explanation.
        - Do not invent details that the answers do not support.
        - Do not mention sub-questions, tools or context in the final answer.

        Conversation:
        {format_history(history)}
        Sub-question answers:
        {self._context_block(fragments)}

        User question:
        {query}

        Answer:
        """

    def synthesize(self, query: str, fragments: list[SubQuestionResult], history: list | None = None) -> str:
        """Block until the full answer is generated. Raises SynthesisError."""
        logger.info("[synthesizer:synthesize] IN  query=%r fragments=%d", query, len(fragments))
        prompt = self.build_prompt(query, fragments, history)
        try:
            answer = self.llm(prompt, max_tokens=self.max_tokens)
        except ServiceUnavailableError:
            raise
        except Exception as e:
            logger.exception("[synthesizer:synthesize] failed")
            raise SynthesisError(f"Failed to synthesize answer: {e}") from e
        logger.info("[synthesizer:synthesize] OUT answer_len=%d", len(answer or ""))
        return answer or ""

    def stream(self, query: str, fragments: list[SubQuestionResult], history: list | None = None) -> Iterator[str]:
        """
        Yield answer increments in generation order. Closing this generator closes the
        upstream LLM stream. Raises SynthesisError from the first pull on failure.
        """
        logger.info("[synthesizer:stream] IN  query=%r fragments=%d", query, len(fragments))
        prompt = self.build_prompt(query, fragments, history)
        upstream = None
        emitted = 0
        try:
            upstream = self.llm_stream(prompt, max_tokens=self.max_tokens)
            for delta in upstream:
                emitted += len(delta)
                yield delta
        except ServiceUnavailableError:
            raise
        except Exception as e:
            logger.exception("[synthesizer:stream] failed after %d chars", emitted)
            raise SynthesisError(f"Failed to stream answer: {e}") from e
        finally:
            close = getattr(upstream, "close", None)
            if close is not None:
                close()
        logger.info("[synthesizer:stream] OUT answer_len=%d", emitted)
