"""Convenience exports for ci-doctor oracle transports."""

from .copilot import CopilotCliClient
from .llm_client import (
    LLMClient,
    LLMClientError,
    LLMRequest,
    LLMResponseFormatError,
    LLMTransportError,
)
from .responses import ResponsesAPIClient

__all__ = [
    "CopilotCliClient",
    "LLMClient",
    "LLMClientError",
    "LLMRequest",
    "LLMResponseFormatError",
    "LLMTransportError",
    "ResponsesAPIClient",
]
