"""
Generation LLM: OpenAI (primary) or Hugging Face router (fallback).
When OPENAI_API_KEY is set, uses OpenAI chat completions; otherwise uses HF router.

Two shapes: complete() returns the whole text, complete_stream() yields text
increments in generation order. Both send the same payload, so for deterministic
generation the joined stream equals the completed text. Provider errors propagate.
"""

import json
import logging
from collections.abc import Iterator
from functools import lru_cache

import httpx
from openai import OpenAI

from chatflow.core.config import (
    HF_API_KEY,
    HF_CHAT_URL,
    HF_LLM_MODEL,
    LLM_API_TIMEOUT,
    OPENAI_API_KEY,
    OPENAI_LLM_MODEL,
)
from chatflow.core.errors import ServiceUnavailableError

logger = logging.getLogger(__name__)


@lru_cache(maxsize=1)
def _openai_client() -> OpenAI:
    return OpenAI(api_key=OPENAI_API_KEY, timeout=LLM_API_TIMEOUT)


def _messages(prompt: str) -> list[dict[str, str]]:
    return [{"role": "user", "content": prompt}]


def _call_openai(prompt: str, max_tokens: int) -> str:
    """Call OpenAI chat completions. Returns generated text."""
    response = _openai_client().chat.completions.create(
        model=OPENAI_LLM_MODEL,
        messages=_messages(prompt),
        max_tokens=max_tokens,
    )
    msg = response.choices[0].message if response.choices else None
    out = (getattr(msg, "content", None) or "") if msg else ""
    logger.info("[llm:openai] OUT response_len=%d", len(out))
    return out


def _hf_headers() -> dict[str, str]:
    return {"Authorization": f"Bearer {HF_API_KEY}", "Content-Type": "application/json"}


def _call_hf(prompt: str, max_tokens: int) -> str:
    """Call Hugging Face router chat completions. Returns generated text."""
    payload = {
        "model": HF_LLM_MODEL,
        "messages": _messages(prompt),
        "max_tokens": max_tokens,
    }
    with httpx.Client(timeout=LLM_API_TIMEOUT) as client:
        response = client.post(HF_CHAT_URL, json=payload, headers=_hf_headers())
    response.raise_for_status()
    data = response.json()
    choices = data.get("choices") or []
    if choices and isinstance(choices[0], dict):
        msg = choices[0].get("message") or {}
        out = msg.get("content") or ""
        logger.info("[llm:hf] OUT response_len=%d", len(out))
        return out
    return ""


def _stream_openai(prompt: str, max_tokens: int) -> Iterator[str]:
    stream = _openai_client().chat.completions.create(
        model=OPENAI_LLM_MODEL,
        messages=_messages(prompt),
        max_tokens=max_tokens,
        stream=True,
    )
    try:
        for chunk in stream:
            if not chunk.choices:
                continue
            delta = getattr(chunk.choices[0].delta, "content", None)
            if delta:
                yield delta
    finally:
        # Reached on exhaustion and on GeneratorExit when the consumer stops pulling.
        stream.close()


def _stream_hf(prompt: str, max_tokens: int) -> Iterator[str]:
    payload = {
        "model": HF_LLM_MODEL,
        "messages": _messages(prompt),
        "max_tokens": max_tokens,
        "stream": True,
    }
    with httpx.Client(timeout=LLM_API_TIMEOUT) as client:
        with client.stream("POST", HF_CHAT_URL, json=payload, headers=_hf_headers()) as response:
            response.raise_for_status()
            for line in response.iter_lines():
                if not line.startswith("data:"):
                    continue
                data = line[len("data:"):].strip()
                if data == "[DONE]":
                    break
                choices = json.loads(data).get("choices") or []
                if not choices:
                    continue
                delta = (choices[0].get("delta") or {}).get("content")
                if delta:
                    yield delta


def _stream_openai_with_fallback(prompt: str, max_tokens: int) -> Iterator[str]:
    """Same fallback rule as complete(): an empty OpenAI stream is replaced by HF when configured."""
    upstream = _stream_openai(prompt, max_tokens)
    produced = False
    try:
        for delta in upstream:
            produced = True
            yield delta
    finally:
        upstream.close()
    if not produced and HF_API_KEY:
        logger.info("[llm:stream] OpenAI stream was empty; falling back to Hugging Face")
        yield from _stream_hf(prompt, max_tokens)


def _require_provider() -> None:
    if not OPENAI_API_KEY and not HF_API_KEY:
        raise ServiceUnavailableError("No LLM provider configured: set OPENAI_API_KEY or HF_API_KEY.")


def complete(prompt: str, max_tokens: int = 512) -> str:
    """
    Generate a full completion. Uses OpenAI when OPENAI_API_KEY is set, else Hugging Face.
    If OpenAI returns empty and an HF key is configured, falls back to HF.
    """
    logger.info("[llm] IN  prompt_len=%d max_tokens=%d", len(prompt), max_tokens)
    logger.debug("[llm] prompt_sample=%r", prompt[:500])
    _require_provider()
    if OPENAI_API_KEY:
        out = _call_openai(prompt, max_tokens)
        if out or not HF_API_KEY:
            return out
        logger.info("[llm] OpenAI returned empty; falling back to Hugging Face")
    return _call_hf(prompt, max_tokens)


def complete_stream(prompt: str, max_tokens: int = 512) -> Iterator[str]:
    """
    Stream a completion as text increments. Closing the returned generator closes the
    upstream HTTP stream, so an abandoned answer stops generation promptly.
    If OpenAI streams nothing and an HF key is configured, streams from HF instead.
    """
    logger.info("[llm:stream] IN  prompt_len=%d max_tokens=%d", len(prompt), max_tokens)
    _require_provider()
    if OPENAI_API_KEY:
        return _stream_openai_with_fallback(prompt, max_tokens)
    return _stream_hf(prompt, max_tokens)
