"""
API handlers: map service errors to HTTP and encode chat answers as Server-Sent Events.

Responsibility: Bridge HTTP types and services. Lives in the API layer so services
stay free of FastAPI/HTTP types.
"""

import json
import logging
from collections.abc import Iterator

from fastapi import HTTPException

from chatflow.core.errors import (
    ChatError,
    ChatValidationError,
    ConflictError,
    DecompositionError,
    NotFoundError,
    ServiceUnavailableError,
    SynthesisError,
)
from chatflow.services.chat_service import ChatTurnResult

logger = logging.getLogger(__name__)

_STATUS_BY_ERROR: list[tuple[type[ChatError], int]] = [
    (ConflictError, 409),
    (NotFoundError, 404),
    (ChatValidationError, 400),
    (DecompositionError, 502),
    (SynthesisError, 502),
    (ServiceUnavailableError, 503),
]


def to_http_exception(error: ChatError) -> HTTPException:
    """Return the HTTPException for a named chat error (500 for unmapped subclasses)."""
    for cls, status in _STATUS_BY_ERROR:
        if isinstance(error, cls):
            return HTTPException(status_code=status, detail=error.message)
    return HTTPException(status_code=500, detail=error.message)


def _event(name: str, payload: dict) -> str:
    return f"event: {name}\ndata: {json.dumps(payload)}\n\n"


def sse_generator(result: ChatTurnResult) -> Iterator[str]:
    """Yield Server-Sent Events: session, answer_delta per increment, then done (or error)."""
    yield _event("session", {"session_id": result.chat["url_key"]})
    parts: list[str] = []
    stream = result.stream
    try:
        for delta in stream or []:
            parts.append(delta)
            yield _event("answer_delta", {"content": delta})
        yield _event(
            "done",
            {
                "answer": "".join(parts),
                "sub_questions": [
                    {"sub_question": s.sub_question, "tool_name": s.tool_name} for s in result.sub_questions
                ],
            },
        )
    except ChatError as e:
        logger.warning("SSE stream failed: %s", e.message)
        yield _event("error", {"message": e.message})
    except Exception as e:
        logger.exception("SSE stream failed")
        yield _event("error", {"message": str(e)})
    finally:
        close = getattr(stream, "close", None)
        if close is not None:
            close()
