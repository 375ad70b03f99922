"""
Query tools: named capabilities that answer a sub-question given its text.

Tools: knowledge_base (retrieval server over HTTP), web_search (DuckDuckGo).
A ToolRegistry maps tool name -> tool; a sub-question naming an unregistered
tool is a data condition the executor handles, not a type check.
"""

import logging
from collections.abc import Callable, Iterator
from dataclasses import dataclass
from typing import Any

import httpx
from ddgs import DDGS

from chatflow.core.config import RETRIEVAL_API_URL, RETRIEVAL_TOP_K, TOOLS_HTTP_TIMEOUT

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ToolMetadata:
    """Name (unique within one registry) and description shown to the question generator."""

    name: str
    description: str


@dataclass(frozen=True)
class ToolOutput:
    """Answer text with an optional relevance score supplied by the tool."""

    text: str
    score: float | None = None


class QueryTool:
    """Base capability: query(text) returns answer text, a ToolOutput, or None for no answer."""

    metadata: ToolMetadata

    def query(self, text: str) -> str | ToolOutput | None:
        raise NotImplementedError


class FunctionTool(QueryTool):
    """Wrap a plain callable (sync or async) as a query tool."""

    def __init__(self, name: str, description: str, fn: Callable[[str], Any]) -> None:
        self.metadata = ToolMetadata(name=name, description=description)
        self.query = fn  # type: ignore[method-assign]


class KnowledgeBaseTool(QueryTool):
    """
    Semantic retrieval over the uploaded documents of one index.

    Calls a retrieval server implementing POST /tools/search_documents
    ({"query", "index"} -> {"results": [{id, text, source, score?}]}).
    """

    def __init__(self, index: str = "default", base_url: str = RETRIEVAL_API_URL, top_k: int = RETRIEVAL_TOP_K) -> None:
        self.index = index
        self.base_url = base_url
        self.top_k = top_k
        self.metadata = ToolMetadata(
            name="knowledge_base",
            description=(
                f"Search the '{index}' knowledge base of uploaded documents (policies, manuals, notes). "
                "Use for any question the user's own documents could answer."
            ),
        )

    def query(self, text: str) -> ToolOutput | None:
        q = (text or "").strip()
        if not q:
            return None
        url = f"{self.base_url}/tools/search_documents"
        logger.info("[tools:knowledge_base] IN  index=%s query=%r", self.index, q)
        with httpx.Client(timeout=TOOLS_HTTP_TIMEOUT) as client:
            response = client.post(url, json={"query": q, "index": self.index})
        response.raise_for_status()
        results = (response.json() or {}).get("results") or []
        if not results:
            logger.info("[tools:knowledge_base] OUT no results")
            return None
        blocks = []
        scores: list[float] = []
        for r in results[: self.top_k]:
            body = (r.get("text") or "")[:800]
            blocks.append(f"[id={r.get('id')} source={r.get('source', '')}]\n{body}")
            if isinstance(r.get("score"), (int, float)):
                scores.append(float(r["score"]))
        logger.info("[tools:knowledge_base] OUT results=%d", len(blocks))
        return ToolOutput(text="\n\n---\n\n".join(blocks), score=max(scores) if scores else None)


class WebSearchTool(QueryTool):
    """Web search via DuckDuckGo (ddgs) for current or external information."""

    def __init__(self, max_results: int = 5) -> None:
        self.max_results = max_results
        self.metadata = ToolMetadata(
            name="web_search",
            description=(
                "Search the web for current or external information, recent events, or general knowledge "
                "not covered by the knowledge base."
            ),
        )

    def query(self, text: str) -> str | None:
        q = (text or "").strip()
        if not q:
            return None
        with DDGS() as ddgs:
            results = list(ddgs.text(q, max_results=self.max_results))
        if not results:
            return None
        lines = []
        for i, r in enumerate(results[: self.max_results], 1):
            title = (r.get("title") or "").strip()
            body = (r.get("body") or "").strip()
            href = (r.get("href") or "").strip()
            lines.append(f"{i}. {title}\n{body}\nURL: {href}")
        return "\n\n".join(lines)


class ToolRegistry:
    """Ordered mapping of tool name -> QueryTool."""

    def __init__(self, tools: list[QueryTool] | None = None) -> None:
        self._tools: dict[str, QueryTool] = {}
        for tool in tools or []:
            self.register(tool)

    def register(self, tool: QueryTool) -> None:
        name = tool.metadata.name
        if name in self._tools:
            raise ValueError(f"Duplicate tool name: {name}")
        self._tools[name] = tool

    def get(self, name: str) -> QueryTool | None:
        return self._tools.get(name)

    @property
    def metadata(self) -> list[ToolMetadata]:
        return [t.metadata for t in self._tools.values()]

    def __len__(self) -> int:
        return len(self._tools)

    def __iter__(self) -> Iterator[QueryTool]:
        return iter(self._tools.values())


def build_registry(engine_options: dict[str, Any] | None = None, index: str = "default") -> ToolRegistry:
    """
    Build the registry for a chat engine. engine_options["tools"] lists enabled tool
    names; all built-in tools are enabled when it is absent.
    """
    available: dict[str, QueryTool] = {
        "knowledge_base": KnowledgeBaseTool(index=index),
        "web_search": WebSearchTool(),
    }
    enabled = (engine_options or {}).get("tools")
    names = list(available) if not enabled else [n for n in enabled if n in available]
    unknown = [n for n in (enabled or []) if n not in available]
    if unknown:
        logger.warning("[tools:build_registry] ignoring unknown tools=%s", unknown)
    return ToolRegistry([available[n] for n in names])
