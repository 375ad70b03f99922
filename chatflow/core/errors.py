"""
Application errors for clean API error handling.

Each chat-turn failure outcome has its own exception so the API layer can map it
to a distinct HTTP status. Tool failures are not here: the executor absorbs them.
"""


class ChatError(Exception):
    """Base class for named chat-turn failures."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(message)


class ConflictError(ChatError):
    """Raised when a session key is supplied on a create-only (no messages) turn."""


class NotFoundError(ChatError):
    """Raised when a session key, chat engine or target message does not resolve."""


class ChatValidationError(ChatError):
    """Raised for structurally invalid turns, e.g. regenerate without a message id."""


class DecompositionError(ChatError):
    """Raised when the LLM fails to produce sub-questions. Fatal for the turn."""


class SynthesisError(ChatError):
    """Raised when the LLM fails to synthesize the final answer. Fatal for the turn."""


class ServiceUnavailableError(ChatError):
    """Raised when a required service (e.g. LLM provider) is unavailable or misconfigured."""
