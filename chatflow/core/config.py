"""
Application configuration (env, settings, constants).

Responsibility: Centralize config loading, environment variables, and app-wide
constants. Keeps the rest of the app decoupled from how config is sourced.
"""

import os

from dotenv import load_dotenv

load_dotenv()

# Chat storage (SQLite file, relative to project root unless absolute)
CHAT_DB_PATH: str = os.getenv("CHAT_DB_PATH", "data/chats.db").strip() or "data/chats.db"

# Chat titles
TITLE_MAX_LENGTH: int = 255
DEFAULT_CHAT_TITLE: str = "Untitled"

# Listing
DEFAULT_PAGE_SIZE: int = 20
MAX_PAGE_SIZE: int = 100

# Default chat engine, seeded into the store on first use
DEFAULT_ENGINE_NAME: str = "default"
DEFAULT_ENGINE: str = "sub-question"

# API timeouts (seconds)
LLM_API_TIMEOUT: float = float(os.getenv("LLM_API_TIMEOUT", "60"))
TOOL_TIMEOUT: float = float(os.getenv("TOOL_TIMEOUT", "30"))
TOOLS_HTTP_TIMEOUT: float = 15.0

# Retrieval server exposing POST /tools/search_documents (knowledge_base tool)
RETRIEVAL_API_URL: str = os.getenv("RETRIEVAL_API_URL", "http://localhost:8001/mcp").strip().rstrip("/")
RETRIEVAL_TOP_K: int = 8

# Sub-question pipeline
MAX_SUB_QUESTIONS: int = 5
DECOMPOSE_MAX_TOKENS: int = 512
SYNTHESIS_MAX_TOKENS: int = 1024
SYNTHESIS_MAX_CONTEXT_CHARS: int = 6000
# When true, fragments are packed into the synthesis prompt by descending score
SYNTHESIS_ORDER_BY_SCORE: bool = os.getenv("SYNTHESIS_ORDER_BY_SCORE", "").strip().lower() in ("1", "true", "yes")

# Hugging Face chat (fallback LLM)
HF_API_KEY: str = os.getenv("HF_API_KEY", "").strip()
HF_CHAT_URL: str = "https://router.huggingface.co/v1/chat/completions"

# OpenAI (primary LLM). When set, generation uses OpenAI instead of Hugging Face.
OPENAI_API_KEY: str = os.getenv("OPENAI_API_KEY", "").strip()
OPENAI_LLM_MODEL: str = (
    os.getenv("OPENAI_LLM_MODEL", "gpt-4o-mini").strip() or "gpt-4o-mini"
)

# HF LLM (fallback when OPENAI_API_KEY is not set). Router chat completions require a chat model.
HF_LLM_MODEL: str = (
    os.getenv("HF_LLM_MODEL", "meta-llama/Llama-3.2-3B-Instruct").strip()
    or "meta-llama/Llama-3.2-3B-Instruct"
)
